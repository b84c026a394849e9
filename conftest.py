import pytest

from cronjobs.config import SchedulerConfig
from cronjobs.jobs import JobTypeRegistry


@pytest.fixture
def config(tmp_path, monkeypatch):
    """Scheduler configuration isolated from the user's environment."""
    for name in ('SCHEDULER_CONFIG_PATH', 'SCHEDULER_MAX_WORKERS', 'SCHEDULER_JOB_STORE_URL',
                 'SCHEDULER_HISTORY_FILE', 'SCHEDULER_TIMEZONE', 'SCHEDULER_GRACE_SECONDS',
                 'SCHEDULER_LOG_DIR'):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv('CRONJOBS_DATA_DIR', str(tmp_path / "data"))
    return SchedulerConfig(config_path=str(tmp_path / "scheduler_config.json"))


@pytest.fixture
def job_types():
    registry = JobTypeRegistry()
    registry.register_function('noop', lambda params: None)
    return registry

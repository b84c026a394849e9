"""
Tests for job types, command execution and run history.
"""

import sys

import pytest

from cronjobs.errors import ExecutionError, UnknownJobTypeError
from cronjobs.jobs import CommandJob, FunctionJob, Job, JobTypeRegistry
from cronjobs.params import to_bag


class RecordingJob(Job):
    calls = []

    def execute(self, params):
        RecordingJob.calls.append(dict(params))


def test_register_and_create():
    registry = JobTypeRegistry()
    registry.register('recording', RecordingJob)

    job = registry.create('recording')
    job.execute(to_bag({'key1': 'value1'}))

    assert isinstance(job, RecordingJob)
    assert RecordingJob.calls[-1] == {'key1': 'value1'}
    assert registry.types() == ['command', 'recording']


def test_each_create_returns_new_instance():
    registry = JobTypeRegistry()
    registry.register('recording', RecordingJob)

    assert registry.create('recording') is not registry.create('recording')


def test_unknown_type():
    registry = JobTypeRegistry(include_builtins=False)

    with pytest.raises(UnknownJobTypeError):
        registry.resolve('command')
    assert 'command' not in registry


def test_duplicate_type_needs_replace():
    registry = JobTypeRegistry()
    registry.register('recording', RecordingJob)

    with pytest.raises(ValueError):
        registry.register('recording', RecordingJob)
    registry.register('recording', RecordingJob, replace=True)
    assert registry.unregister('recording') is True
    assert registry.unregister('recording') is False


def test_decorator_registers_function():
    registry = JobTypeRegistry()
    seen = []

    @registry.job_type('collect')
    def collect(params):
        seen.append(params['item'])

    job = registry.create('collect')
    job.execute(to_bag({'item': 'a'}))

    assert isinstance(job, FunctionJob)
    assert seen == ['a']


def test_factory_must_return_job():
    registry = JobTypeRegistry()
    registry.register('broken', lambda: "not a job")

    with pytest.raises(ExecutionError):
        registry.create('broken')


def test_command_job_success(tmp_path):
    job = CommandJob()
    result = job.execute_command(
        f'"{sys.executable}" -c "import os; print(os.environ[\'GREETING\'])"',
        working_dir=str(tmp_path),
        env={'GREETING': 'hello'},
    )

    assert result['returncode'] == 0
    assert result['stdout'] == 'hello'


def test_command_job_reads_params(tmp_path):
    target = tmp_path / "out.txt"
    params = to_bag({
        'command': f'"{sys.executable}" -c "open(\'out.txt\', \'w\').write(\'done\')"',
        'working_dir': str(tmp_path),
        'timeout': '30',
    })

    CommandJob(job_name='writer').execute(params)

    assert target.read_text() == 'done'


def test_command_job_failure():
    with pytest.raises(ExecutionError):
        CommandJob().execute(to_bag({'command': f'"{sys.executable}" -c "raise SystemExit(3)"'}))


def test_command_job_timeout():
    with pytest.raises(ExecutionError):
        CommandJob().execute(to_bag({
            'command': f'"{sys.executable}" -c "import time; time.sleep(3)"',
            'timeout': '1',
        }))


def test_command_job_requires_command():
    with pytest.raises(ExecutionError):
        CommandJob().execute(to_bag({}))

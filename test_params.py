"""
Tests for converting job parameters to and from per-firing parameter bags.
"""

import pytest

from cronjobs.params import ParameterBag, to_bag, to_mapping


def test_round_trip_preserves_every_pair():
    mapping = {'key1': 'value1', 'key2': 'value2'}

    bag = to_bag(mapping)

    assert len(bag) == 2
    assert bag['key1'] == 'value1'
    assert to_mapping(bag) == mapping


def test_empty_and_missing_mappings_give_empty_bag():
    assert len(to_bag({})) == 0
    assert len(to_bag(None)) == 0
    assert to_mapping(to_bag(None)) == {}


def test_bag_is_a_copy():
    mapping = {'key1': 'value1'}
    bag = to_bag(mapping)

    bag['key1'] = 'changed'
    bag['extra'] = 'x'

    assert mapping == {'key1': 'value1'}
    assert to_bag(mapping)['key1'] == 'value1'


def test_non_string_entries_rejected():
    with pytest.raises(TypeError):
        to_bag({'count': 3})
    with pytest.raises(TypeError):
        to_bag({1: 'one'})

    bag = ParameterBag()
    with pytest.raises(TypeError):
        bag['flag'] = True


def test_typed_readers():
    bag = to_bag({'timeout': ' 30 ', 'verbose': 'yes', 'dry_run': 'false', 'bad': 'maybe'})

    assert bag.get_int('timeout') == 30
    assert bag.get_int('missing', 5) == 5
    assert bag.get_bool('verbose') is True
    assert bag.get_bool('dry_run') is False
    assert bag.get_bool('missing', True) is True
    with pytest.raises(ValueError):
        bag.get_bool('bad')
    with pytest.raises(ValueError):
        bag.get_int('verbose')

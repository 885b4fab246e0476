import pytest
from conftest import FakeRunner

from current_settings.cli import (
    NOT_AVAILABLE,
    SettingsConfig,
    SubprocessRunner,
    infer_jruby_max_active_instances,
    parse_core_count,
)


@pytest.mark.parametrize(
    ("output", "expected"),
    [
        ("1\n", "1"),
        ("2\n", "1"),
        ("3\n", "2"),
        ("5\n", "4"),
        ("64\n", "4"),
        ("0\n", "1"),
        ("-2\n", "1"),
        ("garbage\n", "1"),
    ],
)
def test_infer_clamps_core_count(output, expected):
    assert infer_jruby_max_active_instances(SettingsConfig(), FakeRunner(output)) == expected


@pytest.mark.parametrize("output", [None, "", "  \n"])
def test_infer_without_facter(output):
    assert infer_jruby_max_active_instances(SettingsConfig(), FakeRunner(output)) is NOT_AVAILABLE


def test_infer_passes_command_and_timeout():
    runner = FakeRunner("4\n")
    config = SettingsConfig(facter_timeout_seconds=2.5)
    infer_jruby_max_active_instances(config, runner)
    assert runner.calls == [(("facter", "processorcount"), 2.5)]


def test_parse_core_count():
    assert parse_core_count(" 12\n") == 12
    assert parse_core_count("n/a") == 0


def test_subprocess_runner_missing_command():
    assert SubprocessRunner().run(["current-settings-no-such-command"], timeout=1.0) is None

import pytest
from conftest import FakeFiles

from current_settings.cli import (
    NOT_AVAILABLE,
    JavaArgsRecord,
    SettingsConfig,
    SourceUnreadableError,
    extract_java_flag,
    parse_java_args,
    read_java_args,
    service_defaults_path,
)

SYSCONFIG = "/etc/sysconfig/pe-puppetserver"
DEBIAN_DEFAULT = "/etc/default/pe-puppetserver"


def test_parse_java_args_example():
    record = parse_java_args("-Xms1g -Xmx4g -XX:foo=bar")
    assert record == JavaArgsRecord(xms="1g", xmx="4g", misc="-XX:foo=bar")


def test_parse_java_args_missing_min_heap():
    record = parse_java_args("-Xmx2048m -XX:+UseG1GC")
    assert record.xmx == "2048m"
    assert record.xms is NOT_AVAILABLE
    assert record.misc == "-XX:+UseG1GC"


def test_parse_java_args_trailing_heap_flag_stays_in_misc():
    record = parse_java_args("-XX:+UseG1GC -Xmx2g")
    assert record.xmx == "2g"
    assert record.misc == "-XX:+UseG1GC -Xmx2g"


def test_parse_java_args_only_heap_flags():
    record = parse_java_args("-Xms512m -Xmx512m ")
    assert record.misc == ""
    assert record.misc is not NOT_AVAILABLE


def test_extract_java_flag():
    raw = "-Xmx4g -XX:ReservedCodeCacheSize=1024m"
    assert extract_java_flag(raw, "-XX:ReservedCodeCacheSize=") == "1024m"
    assert extract_java_flag(raw, "-XX:MaxMetaspaceSize=") is NOT_AVAILABLE
    assert extract_java_flag(NOT_AVAILABLE, "-Xmx") is NOT_AVAILABLE


def test_service_defaults_path_by_os_family():
    config = SettingsConfig()
    assert service_defaults_path("pe-puppetserver", config, FakeFiles()) == SYSCONFIG
    debian = FakeFiles({"/etc/debian_version": "10.0\n"})
    assert service_defaults_path("pe-puppetserver", config, debian) == DEBIAN_DEFAULT


def test_read_java_args_redhat():
    files = FakeFiles(
        {
            SYSCONFIG: (
                "# Init settings for pe-puppetserver\n"
                'JAVA_BIN="/opt/puppetlabs/server/bin/java"\n'
                'JAVA_ARGS="-Xms2g -Xmx2g -XX:ReservedCodeCacheSize=512m"\n'
                'JAVA_ARGS="-Xmx8g"\n'
            )
        }
    )
    value = read_java_args("pe-puppetserver", SettingsConfig(), files)
    assert value == "-Xms2g -Xmx2g -XX:ReservedCodeCacheSize=512m"


def test_read_java_args_debian():
    files = FakeFiles({"/etc/debian_version": "10.0\n", DEBIAN_DEFAULT: 'JAVA_ARGS="-Xmx1g"\n'})
    assert read_java_args("pe-puppetserver", SettingsConfig(), files) == "-Xmx1g"


def test_read_java_args_missing_file():
    assert read_java_args("pe-puppetdb", SettingsConfig(), FakeFiles()) is NOT_AVAILABLE


def test_read_java_args_without_marker():
    files = FakeFiles({SYSCONFIG: 'JAVA_BIN="/usr/bin/java"\n'})
    assert read_java_args("pe-puppetserver", SettingsConfig(), files) is NOT_AVAILABLE


def test_read_java_args_unquoted_line():
    files = FakeFiles({SYSCONFIG: "JAVA_ARGS=-Xmx1g\n"})
    assert read_java_args("pe-puppetserver", SettingsConfig(), files) is NOT_AVAILABLE


def test_read_java_args_permission_denied():
    class _Unreadable(FakeFiles):
        def read_text(self, path: str) -> str:
            raise PermissionError(13, "Permission denied", path)

    files = _Unreadable({SYSCONFIG: ""})
    with pytest.raises(SourceUnreadableError):
        read_java_args("pe-puppetserver", SettingsConfig(), files)

#!/usr/bin/env python3
"""Current Settings v1.0 - Report the PE tuning values in effect on a host.

Reads the on-disk configuration of a Puppet Enterprise installation and reports
the current value of every setting adjusted by the 'pe_tune' module:
- puppetserver JRuby pool size (with the documented default when unset)
- Java heap arguments for each PE service (from sysconfig / default files)
- PostgreSQL memory and connection settings
- PuppetDB command processing threads

The report is echoed to the console and written as JSON to a working directory.
"""

from __future__ import annotations

import json
import re
import subprocess
import sys
from collections.abc import Sequence
from pathlib import Path
from typing import Annotated, Any, Literal, Protocol, TypeAlias

import typer
from pydantic import BaseModel, ConfigDict, Field, field_serializer
from rich.console import Console
from rich.table import Table
from rich.theme import Theme

# ============================================================
# SENTINEL & TYPE ALIASES
# ============================================================


class NotAvailableType:
    """Marker for a value that could not be determined."""

    _instance: NotAvailableType | None = None

    def __new__(cls) -> NotAvailableType:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "NOT_AVAILABLE"

    def __reduce__(self) -> str:
        return "NOT_AVAILABLE"


NOT_AVAILABLE = NotAvailableType()
NOT_AVAILABLE_TEXT = "N/A"

ExtractionResult: TypeAlias = str | NotAvailableType
Separator: TypeAlias = Literal[":", "="]
Strategy: TypeAlias = Literal["setting", "setting_or_default", "java_args", "java_flag"]


def encode_value(value: ExtractionResult) -> str:
    """Render an extraction result for the report."""
    return NOT_AVAILABLE_TEXT if isinstance(value, NotAvailableType) else value


def decode_value(text: str) -> ExtractionResult:
    """Inverse of encode_value."""
    return NOT_AVAILABLE if text == NOT_AVAILABLE_TEXT else text


# ============================================================
# ERRORS
# ============================================================


class CurrentSettingsError(Exception):
    """Base class for fatal errors."""


class SourceUnreadableError(CurrentSettingsError):
    """A configuration file exists but cannot be read."""


class ReportWriteError(CurrentSettingsError):
    """The report could not be delivered to its output file."""


# ============================================================
# PYDANTIC MODELS
# ============================================================


class SettingsConfig(BaseModel):
    """Paths, bounds and output location used for one run."""

    model_config = ConfigDict(frozen=True)

    puppetserver_conf: str = "/etc/puppetlabs/puppetserver/conf.d/pe-puppet-server.conf"
    puppetdb_conf: str = "/etc/puppetlabs/puppetdb/conf.d/config.ini"
    postgresql_conf_glob: str = "/opt/puppetlabs/server/data/postgresql/*/data/postgresql.conf"

    # Service startup argument files
    debian_marker: str = "/etc/debian_version"
    debian_defaults_dir: str = "/etc/default"
    redhat_defaults_dir: str = "/etc/sysconfig"
    heap_marker: str = "Xmx"

    # JRuby default calculation
    facter_command: tuple[str, ...] = ("facter", "processorcount")
    facter_timeout_seconds: float = Field(default=10.0, gt=0.0)
    min_default_jrubies: int = 1
    max_default_jrubies: int = 4

    working_directory: Path = Path("/root/tmp")
    output_file: str = "current_tune_settings.json"


class ConfigSource(BaseModel):
    """One configuration file and its line syntax."""

    model_config = ConfigDict(frozen=True)

    name: str
    path: str
    separator: Separator


class JavaArgsRecord(BaseModel):
    """Heap sizes and remaining arguments from a service's JAVA_ARGS."""

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True, populate_by_name=True)

    xms: ExtractionResult = Field(alias="Xms")
    xmx: ExtractionResult = Field(alias="Xmx")
    misc: ExtractionResult = Field(alias="Misc")

    @field_serializer("xms", "xmx", "misc")
    def _serialize_field(self, value: ExtractionResult) -> str:
        return encode_value(value)


ReportValue: TypeAlias = str | NotAvailableType | JavaArgsRecord


class ParameterSpec(BaseModel):
    """How to look up one declared parameter."""

    model_config = ConfigDict(frozen=True)

    name: str
    strategy: Strategy
    source: str
    key: str | None = None


class SettingsReport(BaseModel):
    """Ordered parameter name -> value mapping."""

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    entries: dict[str, ReportValue] = Field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {}
        for name, value in self.entries.items():
            if isinstance(value, JavaArgsRecord):
                result[name] = value.model_dump(by_alias=True)
            else:
                result[name] = encode_value(value)
        return result


# ============================================================
# PARAMETER TABLE
# ============================================================

PUPPETSERVER = "puppetserver"
PUPPETDB = "puppetdb"
POSTGRESQL = "postgresql"

PARAMETER_TABLE: tuple[ParameterSpec, ...] = (
    ParameterSpec(
        name="puppet_enterprise::master::puppetserver::jruby_max_active_instances",
        strategy="setting_or_default",
        source=PUPPETSERVER,
        key="max-active-instances",
    ),
    ParameterSpec(
        name="puppet_enterprise::master::puppetserver::reserved_code_cache",
        strategy="java_flag",
        source="pe-puppetserver",
        key="-XX:ReservedCodeCacheSize=",
    ),
    ParameterSpec(
        name="puppet_enterprise::profile::console::java_args",
        strategy="java_args",
        source="pe-console-services",
    ),
    ParameterSpec(
        name="puppet_enterprise::profile::database::shared_buffers",
        strategy="setting",
        source=POSTGRESQL,
        key="shared_buffers",
    ),
    ParameterSpec(
        name="puppet_enterprise::profile::database::autovacuum_max_workers",
        strategy="setting",
        source=POSTGRESQL,
        key="autovacuum_max_workers",
    ),
    ParameterSpec(
        name="puppet_enterprise::profile::database::autovacuum_work_mem",
        strategy="setting",
        source=POSTGRESQL,
        key="autovacuum_work_mem",
    ),
    ParameterSpec(
        name="puppet_enterprise::profile::database::maintenance_work_mem",
        strategy="setting",
        source=POSTGRESQL,
        key="maintenance_work_mem",
    ),
    ParameterSpec(
        name="puppet_enterprise::profile::database::max_connections",
        strategy="setting",
        source=POSTGRESQL,
        key="max_connections",
    ),
    ParameterSpec(
        name="puppet_enterprise::profile::database::work_mem",
        strategy="setting",
        source=POSTGRESQL,
        key="work_mem",
    ),
    ParameterSpec(
        name="puppet_enterprise::profile::master::java_args",
        strategy="java_args",
        source="pe-puppetserver",
    ),
    ParameterSpec(
        name="puppet_enterprise::profile::orchestrator::java_args",
        strategy="java_args",
        source="pe-orchestration-services",
    ),
    ParameterSpec(
        name="puppet_enterprise::profile::puppetdb::java_args",
        strategy="java_args",
        source="pe-puppetdb",
    ),
    ParameterSpec(
        name="puppet_enterprise::puppetdb::command_processing_threads",
        strategy="setting",
        source=PUPPETDB,
        key="threads",
    ),
)


# ============================================================
# HOST ACCESS
# ============================================================


class FileReader(Protocol):
    """Read-only view of a host filesystem, addressed by absolute host paths."""

    def exists(self, path: str) -> bool:
        """Return True if path is an existing regular file."""
        ...

    def read_text(self, path: str) -> str:
        """Return the contents of path."""
        ...

    def glob(self, pattern: str) -> list[str]:
        """Return host paths matching pattern."""
        ...


class CommandRunner(Protocol):
    """Runs an external command and returns its stdout, or None on failure."""

    def run(self, command: Sequence[str], timeout: float) -> str | None: ...


class LocalFileReader:
    """FileReader over the local filesystem, optionally rooted at a host tree."""

    def __init__(self, root: Path = Path("/")) -> None:
        self.root = root

    def _resolve(self, path: str) -> Path:
        return self.root / path.lstrip("/")

    def exists(self, path: str) -> bool:
        return self._resolve(path).is_file()

    def read_text(self, path: str) -> str:
        return self._resolve(path).read_text(encoding="utf-8", errors="replace")

    def glob(self, pattern: str) -> list[str]:
        return [
            "/" + match.relative_to(self.root).as_posix()
            for match in self.root.glob(pattern.lstrip("/"))
        ]


class SubprocessRunner:
    """CommandRunner backed by subprocess.run (no shell)."""

    def run(self, command: Sequence[str], timeout: float) -> str | None:
        try:
            completed = subprocess.run(
                list(command),
                capture_output=True,
                text=True,
                errors="replace",
                timeout=timeout,
                check=False,
            )
        except (OSError, subprocess.TimeoutExpired):
            return None
        if completed.returncode != 0:
            return None
        return completed.stdout


def source_exists(path: str, files: FileReader) -> bool:
    """files.exists, with permission errors raised as SourceUnreadableError."""
    try:
        return files.exists(path)
    except PermissionError as e:
        raise SourceUnreadableError(f"Permission denied reading {path} (run as root)") from e


def read_source(path: str, files: FileReader) -> str | None:
    """Return file contents, or None when the file is absent."""
    if not source_exists(path, files):
        return None
    try:
        return files.read_text(path)
    except PermissionError as e:
        raise SourceUnreadableError(f"Permission denied reading {path} (run as root)") from e
    except OSError:
        return None


# ============================================================
# CONFIG FILE LOCATION
# ============================================================

_NATURAL_SPLIT = re.compile(r"(\d+)")


def natural_sort_key(path: str) -> list[tuple[int, int | str]]:
    """Sort key that orders '9.6' before '11'."""
    return [
        (0, int(part)) if part.isdigit() else (1, part) for part in _NATURAL_SPLIT.split(path)
    ]


def locate_config_sources(
    config: SettingsConfig, files: FileReader
) -> dict[str, ConfigSource | None]:
    """Resolve every configuration dialect to a source, or None if none is installed."""
    postgresql_matches = sorted(files.glob(config.postgresql_conf_glob), key=natural_sort_key)
    postgresql_source = (
        ConfigSource(name=POSTGRESQL, path=postgresql_matches[-1], separator="=")
        if postgresql_matches
        else None
    )

    return {
        PUPPETSERVER: ConfigSource(
            name=PUPPETSERVER, path=config.puppetserver_conf, separator=":"
        ),
        PUPPETDB: ConfigSource(name=PUPPETDB, path=config.puppetdb_conf, separator="="),
        POSTGRESQL: postgresql_source,
    }


# ============================================================
# SETTING EXTRACTION
# ============================================================


def setting_pattern(parameter: str, separator: Separator) -> re.Pattern[str]:
    """Line-anchored pattern for 'parameter<sep> value'."""
    return re.compile(
        rf"^[ \t]*{re.escape(parameter)}[ \t]*{re.escape(separator)}[ \t]*(\S+)",
        re.MULTILINE,
    )


def extract_from_text(text: str, parameter: str, separator: Separator) -> ExtractionResult:
    """Return the value of the last line setting parameter."""
    matches = setting_pattern(parameter, separator).findall(text)
    return matches[-1] if matches else NOT_AVAILABLE


def extract_setting(
    source: ConfigSource | None, parameter: str, files: FileReader
) -> ExtractionResult:
    """Look up parameter in a configuration source; later lines override earlier ones."""
    if source is None:
        return NOT_AVAILABLE
    text = read_source(source.path, files)
    if text is None:
        return NOT_AVAILABLE
    return extract_from_text(text, parameter, source.separator)


# ============================================================
# JAVA ARGUMENTS
# ============================================================


def service_defaults_path(service: str, config: SettingsConfig, files: FileReader) -> str:
    """Path of the startup argument file for service on this OS family."""
    if source_exists(config.debian_marker, files):
        return f"{config.debian_defaults_dir}/{service}"
    return f"{config.redhat_defaults_dir}/{service}"


def read_java_args(service: str, config: SettingsConfig, files: FileReader) -> ExtractionResult:
    """Return the quoted argument string from the first line carrying the heap marker."""
    text = read_source(service_defaults_path(service, config, files), files)
    if text is None:
        return NOT_AVAILABLE

    for line in text.splitlines():
        if config.heap_marker in line:
            parts = line.split('"')
            return parts[1] if len(parts) > 1 else NOT_AVAILABLE
    return NOT_AVAILABLE


def extract_java_flag(raw: ExtractionResult, flag: str) -> ExtractionResult:
    """Return the token directly following flag (e.g. '-Xmx' -> '4g')."""
    if isinstance(raw, NotAvailableType):
        return NOT_AVAILABLE
    if match := re.search(rf"{re.escape(flag)}(\S+)", raw):
        return match.group(1)
    return NOT_AVAILABLE


def parse_java_args(raw: str) -> JavaArgsRecord:
    """Split a JAVA_ARGS string into Xms, Xmx and the remaining arguments.

    The heap flags are removed as literal '<flag><value> ' substrings, so a heap
    flag at the very end of the string (no trailing space) stays in Misc.
    """
    xmx = extract_java_flag(raw, "-Xmx")
    xms = extract_java_flag(raw, "-Xms")

    misc = raw
    if xmx is not NOT_AVAILABLE:
        misc = misc.replace(f"-Xmx{xmx} ", "")
    if xms is not NOT_AVAILABLE:
        misc = misc.replace(f"-Xms{xms} ", "")

    return JavaArgsRecord(xms=xms, xmx=xmx, misc=misc.strip())


# ============================================================
# DEFAULT INFERENCE
# ============================================================

_LEADING_INT = re.compile(r"^\s*([-+]?\d+)")


def parse_core_count(output: str) -> int:
    """Leading integer of facter output; malformed output counts as 0."""
    if match := _LEADING_INT.match(output):
        return int(match.group(1))
    return 0


def infer_jruby_max_active_instances(
    config: SettingsConfig, runner: CommandRunner
) -> ExtractionResult:
    """Documented default for max-active-instances: processorcount - 1, within [1, 4].

    No facter means no puppet agent, hence no puppetserver either.
    """
    output = runner.run(config.facter_command, config.facter_timeout_seconds)
    if output is None or not output.strip():
        return NOT_AVAILABLE

    num_cores = parse_core_count(output)
    value = max(num_cores - 1, config.min_default_jrubies)
    return str(min(value, config.max_default_jrubies))


# ============================================================
# AGGREGATION
# ============================================================


def lookup_parameter(
    spec: ParameterSpec,
    sources: dict[str, ConfigSource | None],
    config: SettingsConfig,
    files: FileReader,
    runner: CommandRunner,
) -> ReportValue:
    """Resolve one declared parameter according to its strategy."""
    if spec.strategy == "setting":
        return extract_setting(sources.get(spec.source), spec.key or "", files)

    if spec.strategy == "setting_or_default":
        source = sources.get(spec.source)
        if source is None or not source_exists(source.path, files):
            return NOT_AVAILABLE
        value = extract_setting(source, spec.key or "", files)
        if value is not NOT_AVAILABLE:
            return value
        # Nothing in the file, so the built-in default is in effect
        return infer_jruby_max_active_instances(config, runner)

    raw = read_java_args(spec.source, config, files)
    if spec.strategy == "java_flag":
        return extract_java_flag(raw, spec.key or "")
    if isinstance(raw, NotAvailableType):
        return NOT_AVAILABLE
    return parse_java_args(raw)


def collect_settings(
    config: SettingsConfig,
    files: FileReader,
    runner: CommandRunner,
    parameters: Sequence[ParameterSpec] = PARAMETER_TABLE,
    *,
    verbose: bool = False,
) -> SettingsReport:
    """Build the report for every declared parameter, in declaration order."""
    sources = locate_config_sources(config, files)
    if verbose:
        for name, source in sources.items():
            location = source.path if source else "not installed"
            err_console.print(f"[info]Source {name}: {location}[/info]")

    entries: dict[str, ReportValue] = {}
    for spec in parameters:
        value = lookup_parameter(spec, sources, config, files, runner)
        entries[spec.name] = value
        if verbose:
            err_console.print(f"[label]{spec.name}[/label] [metric]{format_value(value)}[/metric]")

    return SettingsReport(entries=entries)


def serialize_report(report: SettingsReport) -> str:
    """Pretty-printed JSON, key order preserved."""
    return json.dumps(report.to_dict(), indent=2)


def parse_report(text: str) -> SettingsReport:
    """Parse serialize_report output back into a report."""
    entries: dict[str, ReportValue] = {}
    for name, value in json.loads(text).items():
        if isinstance(value, dict):
            entries[name] = JavaArgsRecord(
                xms=decode_value(value["Xms"]),
                xmx=decode_value(value["Xmx"]),
                misc=decode_value(value["Misc"]),
            )
        else:
            entries[name] = decode_value(value)
    return SettingsReport(entries=entries)


def write_report(text: str, working_directory: Path, output_file: str) -> Path:
    """Create the working directory if needed and write the report in one go."""
    output_path = working_directory / output_file
    try:
        working_directory.mkdir(parents=True, exist_ok=True)
        output_path.write_text(text, encoding="utf-8")
    except OSError as e:
        raise ReportWriteError(f"Unable to write report to {output_path}: {e}") from e
    return output_path


# ============================================================
# RICH OUTPUT
# ============================================================

CURRENT_SETTINGS_THEME = Theme(
    {
        "critical": "bold red",
        "warning": "bold yellow",
        "success": "bold green",
        "info": "cyan",
        "metric": "white",
        "label": "dim white",
        "header": "bold magenta",
    }
)

console = Console(theme=CURRENT_SETTINGS_THEME)
err_console = Console(theme=CURRENT_SETTINGS_THEME, stderr=True)


def format_value(value: ReportValue) -> str:
    """Single-line rendering of a report value."""
    if isinstance(value, JavaArgsRecord):
        return " ".join(
            f"{label}={encode_value(field)}"
            for label, field in (("Xms", value.xms), ("Xmx", value.xmx), ("Misc", value.misc))
        )
    return encode_value(value)


def create_settings_table(report: SettingsReport) -> Table:
    """Two-column parameter/value table."""
    table = Table(title="Current Tune Settings", show_header=False, box=None, padding=(0, 2))
    table.add_column("Parameter", style="label")
    table.add_column("Value", style="metric")
    for name, value in report.entries.items():
        style = "warning" if value is NOT_AVAILABLE else "metric"
        table.add_row(name, f"[{style}]{format_value(value)}[/{style}]")
    return table


def render_report(report: SettingsReport, text: str, *, table: bool = False) -> None:
    """Echo the report to the console."""
    if table:
        console.print(create_settings_table(report))
    else:
        console.print_json(text)


def current_settings(
    config: SettingsConfig,
    files: FileReader,
    runner: CommandRunner,
    *,
    echo: bool = True,
    table: bool = False,
    verbose: bool = False,
) -> str:
    """Collect, print and save the report; return its JSON text."""
    report = collect_settings(config, files, runner, verbose=verbose)
    settings_json = serialize_report(report)

    if echo:
        render_report(report, settings_json, table=table)

    output_path = write_report(settings_json, config.working_directory, config.output_file)
    if verbose:
        err_console.print(f"[success]Report written to {output_path}[/success]")

    return settings_json


# ============================================================
# TYPER CLI INTERFACE
# ============================================================

app = typer.Typer(
    name="current-settings",
    help="Report the PE tuning settings currently in effect on this host",
    add_completion=False,
    rich_markup_mode="rich",
)


@app.command()
def collect(
    root: Annotated[
        Path,
        typer.Option(
            "--root",
            help="Filesystem root of the host to inspect (e.g. a mounted image)",
            exists=True,
            file_okay=False,
            dir_okay=True,
        ),
    ] = Path("/"),
    output_dir: Annotated[
        Path,
        typer.Option(
            "--output-dir",
            "-d",
            help="Directory the JSON report is written to (created if missing)",
            file_okay=False,
            dir_okay=True,
        ),
    ] = SettingsConfig().working_directory,
    output_file: Annotated[
        str,
        typer.Option("--output-file", "-o", help="Report filename inside the output directory"),
    ] = SettingsConfig().output_file,
    facter_timeout: Annotated[
        float,
        typer.Option(
            "--facter-timeout",
            help="Seconds to wait for 'facter processorcount'",
            min=0.1,
        ),
    ] = SettingsConfig().facter_timeout_seconds,
    quiet: Annotated[
        bool,
        typer.Option("--quiet", "-q", help="Do not echo the report to the console"),
    ] = False,
    table: Annotated[
        bool,
        typer.Option("--table", help="Echo the report as a table instead of JSON"),
    ] = False,
    verbose: Annotated[
        bool,
        typer.Option(
            "--verbose",
            "-v",
            help="Show resolved sources and each lookup on stderr",
        ),
    ] = False,
) -> None:
    """Collect the current tune settings and write them as JSON.

    Exit codes: 0 = report written, 1 = a source was unreadable or the report could not be saved.
    """
    config = SettingsConfig(
        working_directory=output_dir,
        output_file=output_file,
        facter_timeout_seconds=facter_timeout,
    )

    try:
        current_settings(
            config,
            LocalFileReader(root),
            SubprocessRunner(),
            echo=not quiet,
            table=table,
            verbose=verbose,
        )
    except CurrentSettingsError as e:
        err_console.print(f"[critical]ERROR: {e}[/critical]")
        sys.exit(1)


@app.command()
def version() -> None:
    """Display version."""
    console.print("current-settings 1.0.0")


if __name__ == "__main__":
    app()

# /// script
# requires-python = ">=3.13"
# dependencies = [
#   "requests",
#   "pandas",
#   "playwright",
# ]
# ///
"""Lighthouse Batch Audit CLI Tool.

Runs Lighthouse against a list of pages, one fresh headless Chromium per
page, stores each raw JSON result in a timestamped report folder, and
aggregates the folder into an index.html summary with per-page detail
reports.
"""

from __future__ import annotations

import argparse
import json
import math
import os
import shlex
import socket
import subprocess
import sys
import time
import tomllib
import webbrowser
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from html import escape
from pathlib import Path
from urllib.parse import quote

import pandas as pd
import requests
from playwright.sync_api import Error as PlaywrightError
from playwright.sync_api import sync_playwright

__version__ = "1.0.0"

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

VALID_FORM_FACTORS = ("desktop", "mobile")
VALID_OUTPUT_FORMATS = ("json",)

# (lighthouse category id, summary field, index column header)
SCORE_CATEGORIES = [
    ("performance", "performance", "Performance"),
    ("accessibility", "accessibility", "Accessibility"),
    ("best-practices", "best_practices", "Best Practices"),
    ("seo", "seo", "SEO"),
]

TOTAL_BYTE_WEIGHT_AUDIT = "total-byte-weight"
INTERACTIVE_AUDIT = "interactive"

DEFAULT_PAGES_FILE = "resources/urls.json"
DEFAULT_REPORTS_DIR = "./reports"
DEFAULT_FORM_FACTOR = "desktop"
DEFAULT_VIEWPORT_WIDTH = 1920
DEFAULT_VIEWPORT_HEIGHT = 1080
DEFAULT_OUTPUT_FORMAT = "json"
DEFAULT_GOOD_SCORE = 90
DEFAULT_AVERAGE_SCORE = 50
DEFAULT_LIGHTHOUSE_CMD = "lighthouse"
DEFAULT_NODE_CMD = "node"
DEFAULT_RENDERER_MODULE = "lighthouse/report/generator/report-generator.js"
DEFAULT_CHROME_FLAGS = ["--no-sandbox"]

DEVTOOLS_HOST = "127.0.0.1"
DEVTOOLS_STARTUP_TIMEOUT = 30.0
DEVTOOLS_POLL_INTERVAL = 0.25

JSON_SUBDIR = "json"
HTML_SUBDIR = "html"
INDEX_FILENAME = "index.html"
SUMMARY_CSV_FILENAME = "summary.csv"
FAILURES_FILENAME = "failures.json"

CONFIG_FILENAMES = ["lighthouse-batch.toml"]
CONFIG_SEARCH_PATHS = [
    Path.cwd(),
    Path.home() / ".config" / "lighthouse-batch",
]

# Reads an LHR from stdin and writes the standalone HTML report to stdout.
# The generator module specifier is passed as the first script argument.
RENDER_SCRIPT = """
const {ReportGenerator} = await import(process.argv[1]);
let data = '';
process.stdin.setEncoding('utf8');
for await (const chunk of process.stdin) data += chunk;
process.stdout.write(ReportGenerator.generateReport(JSON.parse(data), 'html'));
"""


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class LighthouseBatchError(Exception):
    """Base class for all errors raised by this tool."""


class ConfigError(LighthouseBatchError):
    """Raised when configuration values are invalid."""


class BrowserLaunchError(LighthouseBatchError):
    """Raised when a headless browser cannot be started or reached."""


class AuditError(LighthouseBatchError):
    """Raised when a Lighthouse run fails or produces unusable output."""


class RendererError(LighthouseBatchError):
    """Raised when an audit result cannot be rendered to HTML."""


class ReportParseError(LighthouseBatchError):
    """Raised when a stored audit result is not valid JSON."""


# ---------------------------------------------------------------------------
# Data Model
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PageDescriptor:
    url: str
    page_name: str


@dataclass(frozen=True)
class ScoreBands:
    """Lower bounds (inclusive) of the good and average score bands."""

    good: int = DEFAULT_GOOD_SCORE
    average: int = DEFAULT_AVERAGE_SCORE

    def classify(self, score: int) -> str:
        if score >= self.good:
            return "good"
        if score >= self.average:
            return "average"
        return "poor"


DEFAULT_SCORE_BANDS = ScoreBands()


@dataclass(frozen=True)
class AuditConfig:
    """Options passed to the batch runner and the aggregate reporter."""

    form_factor: str = DEFAULT_FORM_FACTOR
    viewport_width: int = DEFAULT_VIEWPORT_WIDTH
    viewport_height: int = DEFAULT_VIEWPORT_HEIGHT
    output_format: str = DEFAULT_OUTPUT_FORMAT
    score_bands: ScoreBands = DEFAULT_SCORE_BANDS
    lighthouse_cmd: str = DEFAULT_LIGHTHOUSE_CMD
    node_cmd: str = DEFAULT_NODE_CMD
    renderer_module: str = DEFAULT_RENDERER_MODULE
    chrome_path: str | None = None
    chrome_flags: tuple[str, ...] = tuple(DEFAULT_CHROME_FLAGS)
    verbose: bool = False


@dataclass(frozen=True)
class AuditEntry:
    numeric_value: float | None = None
    display_value: str | None = None


@dataclass
class AuditResult:
    """Typed view over a Lighthouse result (LHR).

    A category that is missing from the LHR is missing from ``categories``;
    a category present with a null score maps to None. Neither is zero.
    """

    categories: dict[str, float | None]
    audits: dict[str, AuditEntry]
    raw: dict

    @classmethod
    def from_dict(cls, data: dict) -> AuditResult:
        """Raises ReportParseError when categories or audits is not an object."""
        raw_categories = data.get("categories") or {}
        raw_audits = data.get("audits") or {}
        if not isinstance(raw_categories, dict):
            raise ReportParseError(f"'categories' must be an object, got {type(raw_categories).__name__}")
        if not isinstance(raw_audits, dict):
            raise ReportParseError(f"'audits' must be an object, got {type(raw_audits).__name__}")

        categories: dict[str, float | None] = {}
        for category_id, category_data in raw_categories.items():
            score = category_data.get("score") if isinstance(category_data, dict) else None
            categories[category_id] = float(score) if isinstance(score, (int, float)) else None

        audits: dict[str, AuditEntry] = {}
        for audit_id, audit_data in raw_audits.items():
            if not isinstance(audit_data, dict):
                continue
            numeric = audit_data.get("numericValue")
            display = audit_data.get("displayValue")
            audits[audit_id] = AuditEntry(
                numeric_value=float(numeric) if isinstance(numeric, (int, float)) else None,
                display_value=display if isinstance(display, str) else None,
            )
        return cls(categories=categories, audits=audits, raw=data)

    def category_score(self, category_id: str) -> float | None:
        return self.categories.get(category_id)

    def numeric_value(self, audit_id: str) -> float | None:
        entry = self.audits.get(audit_id)
        return entry.numeric_value if entry else None


@dataclass(frozen=True)
class SummaryRow:
    file_name: str
    performance: int
    accessibility: int
    best_practices: int
    seo: int
    page_size: str
    load_time: str


@dataclass(frozen=True)
class PageFailure:
    page_name: str
    url: str
    error: str


@dataclass
class BatchOutcome:
    report_folder: Path
    written: list[Path] = field(default_factory=list)
    failures: list[PageFailure] = field(default_factory=list)
    summaries: list[SummaryRow] = field(default_factory=list)
    aggregated: bool = False

    @property
    def ok(self) -> bool:
        return self.aggregated and not self.failures


@dataclass(frozen=True)
class BrowserHandle:
    port: int
    ws_endpoint: str


# ---------------------------------------------------------------------------
# Config & Profile
# ---------------------------------------------------------------------------


def discover_config_path() -> Path | None:
    """Find the first existing config file in search paths."""
    for search_dir in CONFIG_SEARCH_PATHS:
        for filename in CONFIG_FILENAMES:
            candidate = search_dir / filename
            if candidate.is_file():
                return candidate
    return None


def load_config(config_path: Path | None) -> dict:
    """Parse a TOML config file and return its contents as a dict."""
    if config_path is None:
        return {}
    try:
        with open(config_path, "rb") as fh:
            return tomllib.load(fh)
    except tomllib.TOMLDecodeError as exc:
        print(f"Error: malformed config file {config_path}: {exc}", file=sys.stderr)
        sys.exit(1)
    except OSError as exc:
        print(f"Error: cannot read config file {config_path}: {exc}", file=sys.stderr)
        sys.exit(1)


def apply_profile(args: argparse.Namespace, config: dict, profile_name: str | None) -> argparse.Namespace:
    """Merge config [settings] and optional profile into args.

    Resolution order (highest priority wins):
      1. Explicit CLI flags
      2. Profile values
      3. [settings] defaults from config
      4. Environment (LIGHTHOUSE_PATH, CHROME_PATH)
      5. Built-in defaults (already in args)
    """
    settings = config.get("settings", {})
    profile = {}
    if profile_name:
        profiles = config.get("profiles", {})
        if profile_name not in profiles:
            available = ", ".join(profiles.keys()) if profiles else "(none)"
            print(
                f"Error: profile '{profile_name}' not found in config. Available: {available}",
                file=sys.stderr,
            )
            sys.exit(1)
        profile = profiles[profile_name]

    config_key_map = {
        "pages_file": "file",
        "reports_dir": "reports_dir",
        "form_factor": "form_factor",
        "viewport_width": "viewport_width",
        "viewport_height": "viewport_height",
        "output_format": "output_format",
        "good_score": "good_score",
        "average_score": "average_score",
        "lighthouse_cmd": "lighthouse_cmd",
        "node_cmd": "node_cmd",
        "renderer_module": "renderer_module",
        "chrome_path": "chrome_path",
        "chrome_flags": "chrome_flags",
        "verbose": "verbose",
    }

    cli_explicit = set(getattr(args, "_explicit_args", []))
    from_config: set[str] = set()

    for config_key, arg_dest in config_key_map.items():
        if arg_dest in cli_explicit:
            continue
        if config_key in profile:
            setattr(args, arg_dest, profile[config_key])
            from_config.add(arg_dest)
        elif config_key in settings:
            setattr(args, arg_dest, settings[config_key])
            from_config.add(arg_dest)

    env_overrides = {
        "lighthouse_cmd": "LIGHTHOUSE_PATH",
        "chrome_path": "CHROME_PATH",
    }
    for arg_dest, env_name in env_overrides.items():
        if arg_dest in cli_explicit or arg_dest in from_config:
            continue
        env_value = os.environ.get(env_name)
        if env_value:
            setattr(args, arg_dest, env_value)

    return args


def build_audit_config(args: argparse.Namespace) -> AuditConfig:
    """Validate merged CLI/config values and build an AuditConfig."""
    form_factor = getattr(args, "form_factor", DEFAULT_FORM_FACTOR)
    if form_factor not in VALID_FORM_FACTORS:
        raise ConfigError(f"invalid form factor '{form_factor}' (expected one of: {', '.join(VALID_FORM_FACTORS)})")

    output_format = getattr(args, "output_format", DEFAULT_OUTPUT_FORMAT)
    if output_format not in VALID_OUTPUT_FORMATS:
        raise ConfigError(f"invalid output format '{output_format}' (expected one of: {', '.join(VALID_OUTPUT_FORMATS)})")

    try:
        width = int(getattr(args, "viewport_width", DEFAULT_VIEWPORT_WIDTH))
        height = int(getattr(args, "viewport_height", DEFAULT_VIEWPORT_HEIGHT))
        good = int(getattr(args, "good_score", DEFAULT_GOOD_SCORE))
        average = int(getattr(args, "average_score", DEFAULT_AVERAGE_SCORE))
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"expected an integer option: {exc}") from exc

    if width <= 0 or height <= 0:
        raise ConfigError(f"viewport must be positive, got {width}x{height}")
    if not 0 <= average <= good <= 100:
        raise ConfigError(f"score bands must satisfy 0 <= average ({average}) <= good ({good}) <= 100")

    chrome_flags = getattr(args, "chrome_flags", None)
    if chrome_flags is None:
        chrome_flags = DEFAULT_CHROME_FLAGS
    elif isinstance(chrome_flags, str):
        chrome_flags = shlex.split(chrome_flags)

    return AuditConfig(
        form_factor=form_factor,
        viewport_width=width,
        viewport_height=height,
        output_format=output_format,
        score_bands=ScoreBands(good=good, average=average),
        lighthouse_cmd=getattr(args, "lighthouse_cmd", None) or DEFAULT_LIGHTHOUSE_CMD,
        node_cmd=getattr(args, "node_cmd", None) or DEFAULT_NODE_CMD,
        renderer_module=getattr(args, "renderer_module", None) or DEFAULT_RENDERER_MODULE,
        chrome_path=getattr(args, "chrome_path", None) or None,
        chrome_flags=tuple(chrome_flags),
        verbose=bool(getattr(args, "verbose", False)),
    )


# ---------------------------------------------------------------------------
# CLI Argument Parser
# ---------------------------------------------------------------------------


class TrackingNamespace(argparse.Namespace):
    """Namespace that merges _explicit_args instead of replacing it.

    argparse copies a subcommand's namespace onto the parent one, which would
    otherwise drop global flags such as -v that were recorded first.
    """

    def __setattr__(self, name, value):
        if name == "_explicit_args" and name in self.__dict__:
            existing = self.__dict__[name]
            value = existing + [dest for dest in value if dest not in existing]
        super().__setattr__(name, value)


def parse_arguments(parser: argparse.ArgumentParser, argv: list[str] | None = None) -> argparse.Namespace:
    return parser.parse_args(argv, namespace=TrackingNamespace())


class TrackingAction(argparse.Action):
    """Argparse action that records which flags were explicitly provided."""

    def __call__(self, parser, namespace, values, option_string=None):
        setattr(namespace, self.dest, values)
        explicit = getattr(namespace, "_explicit_args", [])
        explicit.append(self.dest)
        namespace._explicit_args = explicit


class TrackingStoreTrueAction(argparse.Action):
    """Like store_true but tracks that the flag was explicitly set."""

    def __init__(self, option_strings, dest, default=False, required=False, help=None):
        super().__init__(option_strings=option_strings, dest=dest, nargs=0, const=True, default=default, required=required, help=help)

    def __call__(self, parser, namespace, values, option_string=None):
        setattr(namespace, self.dest, True)
        explicit = getattr(namespace, "_explicit_args", [])
        explicit.append(self.dest)
        namespace._explicit_args = explicit


def _add_report_arguments(subparser: argparse.ArgumentParser) -> None:
    subparser.add_argument("--good-score", dest="good_score", action=TrackingAction, type=int, default=DEFAULT_GOOD_SCORE, help=f"Lowest score shown as good (default: {DEFAULT_GOOD_SCORE})")
    subparser.add_argument("--average-score", dest="average_score", action=TrackingAction, type=int, default=DEFAULT_AVERAGE_SCORE, help=f"Lowest score shown as average (default: {DEFAULT_AVERAGE_SCORE})")
    subparser.add_argument("--node", dest="node_cmd", action=TrackingAction, default=DEFAULT_NODE_CMD, help="Node.js executable used to render detail reports")
    subparser.add_argument("--renderer-module", dest="renderer_module", action=TrackingAction, default=DEFAULT_RENDERER_MODULE, help="Module specifier of the Lighthouse report generator")
    subparser.add_argument("--reports-dir", dest="reports_dir", action=TrackingAction, default=DEFAULT_REPORTS_DIR, help="Root directory for report folders")
    subparser.add_argument("--open", dest="open_browser", action=TrackingStoreTrueAction, default=False, help="Open index.html in a browser when done")


def build_argument_parser() -> argparse.ArgumentParser:
    """Build the CLI argument parser with subcommands."""
    parser = argparse.ArgumentParser(
        prog="lighthouse-batch",
        description="Lighthouse Batch Audit CLI Tool",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("-c", "--config", dest="config", action=TrackingAction, default=None, help="Path to config TOML file")
    parser.add_argument("-p", "--profile", dest="profile", action=TrackingAction, default=None, help="Named profile from config file")
    parser.add_argument("-v", "--verbose", dest="verbose", action=TrackingStoreTrueAction, default=False, help="Verbose output to stderr")

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # --- run ---
    run_parser = subparsers.add_parser("run", help="Audit every page, then build the index report")
    run_parser.add_argument("-f", "--file", dest="file", action=TrackingAction, default=DEFAULT_PAGES_FILE, help=f"JSON file of {{url, pageName}} entries (default: {DEFAULT_PAGES_FILE})")
    run_parser.add_argument("--form-factor", dest="form_factor", action=TrackingAction, default=DEFAULT_FORM_FACTOR, choices=VALID_FORM_FACTORS, help="Lighthouse form factor")
    run_parser.add_argument("--width", dest="viewport_width", action=TrackingAction, type=int, default=DEFAULT_VIEWPORT_WIDTH, help="Emulated screen width")
    run_parser.add_argument("--height", dest="viewport_height", action=TrackingAction, type=int, default=DEFAULT_VIEWPORT_HEIGHT, help="Emulated screen height")
    run_parser.add_argument("--output-format", dest="output_format", action=TrackingAction, default=DEFAULT_OUTPUT_FORMAT, choices=VALID_OUTPUT_FORMATS, help="Structured Lighthouse output format")
    run_parser.add_argument("--lighthouse", dest="lighthouse_cmd", action=TrackingAction, default=DEFAULT_LIGHTHOUSE_CMD, help="Lighthouse command (e.g. 'npx lighthouse'; or set LIGHTHOUSE_PATH)")
    run_parser.add_argument("--chrome-path", dest="chrome_path", action=TrackingAction, default=None, help="Chromium executable (or set CHROME_PATH)")
    _add_report_arguments(run_parser)

    # --- aggregate ---
    aggregate_parser = subparsers.add_parser("aggregate", help="Rebuild detail pages and index for an existing report folder")
    aggregate_parser.add_argument("folder", help="Report folder path, or folder name under --reports-dir")
    _add_report_arguments(aggregate_parser)

    # --- pages ---
    pages_parser = subparsers.add_parser("pages", help="List the configured pages")
    pages_parser.add_argument("-f", "--file", dest="file", action=TrackingAction, default=DEFAULT_PAGES_FILE, help=f"JSON file of {{url, pageName}} entries (default: {DEFAULT_PAGES_FILE})")

    return parser


# ---------------------------------------------------------------------------
# Page List
# ---------------------------------------------------------------------------


def parse_pages(entries: object) -> list[PageDescriptor]:
    """Build page descriptors from decoded JSON, skipping unusable entries."""
    if not isinstance(entries, list):
        raise ConfigError("page list must be a JSON array of {url, pageName} objects")

    pages: list[PageDescriptor] = []
    seen_names: set[str] = set()
    for position, entry in enumerate(entries):
        if not isinstance(entry, dict):
            print(f"Warning: skipping page entry #{position}: not an object", file=sys.stderr)
            continue
        url = entry.get("url")
        page_name = entry.get("pageName")
        if not isinstance(url, str) or not url.strip():
            print(f"Warning: skipping page entry #{position}: missing url", file=sys.stderr)
            continue
        if not isinstance(page_name, str) or not page_name.strip():
            print(f"Warning: skipping page entry #{position} ({url}): missing pageName", file=sys.stderr)
            continue
        # Results are stored as json/<trimmed name>.json, so names must be unique.
        if page_name.strip() in seen_names:
            print(f"Warning: skipping page entry #{position} ({url}): duplicate pageName '{page_name.strip()}'", file=sys.stderr)
            continue
        seen_names.add(page_name.strip())
        pages.append(PageDescriptor(url=url.strip(), page_name=page_name))
    return pages


def load_pages(file_path: str) -> list[PageDescriptor]:
    """Load page descriptors from a JSON file. Exits on unusable input."""
    path = Path(file_path)
    if not path.is_file():
        print(f"Error: pages file not found: {file_path}", file=sys.stderr)
        sys.exit(1)
    try:
        entries = json.loads(path.read_text(encoding="utf-8"))
        pages = parse_pages(entries)
    except json.JSONDecodeError as exc:
        print(f"Error: malformed pages file {file_path}: {exc}", file=sys.stderr)
        sys.exit(1)
    except ConfigError as exc:
        print(f"Error: {file_path}: {exc}", file=sys.stderr)
        sys.exit(1)

    if not pages:
        print("Error: no valid pages provided.", file=sys.stderr)
        sys.exit(1)
    return pages


# ---------------------------------------------------------------------------
# Report Folder
# ---------------------------------------------------------------------------


def new_folder_id() -> str:
    """Timestamp naming one batch run, e.g. 2025-01-23T11:26:32.100Z."""
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def resolve_report_folder(folder: str, reports_dir: str) -> Path:
    """Accept either a report folder path or a folder id under reports_dir."""
    candidate = Path(folder)
    if candidate.is_dir():
        return candidate
    return Path(reports_dir) / folder


def ensure_report_dirs(report_folder: Path) -> None:
    """Create the report folder and its json/ subfolder.

    Failures are reported but not raised; the write that needs the
    directory fails later instead.
    """
    try:
        (report_folder / JSON_SUBDIR).mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        print(f"Error: cannot create report directory {report_folder}: {exc}", file=sys.stderr)


def save_audit_result(lhr: dict, report_folder: Path, page_name: str) -> Path:
    """Write a raw Lighthouse result to json/<pageName>.json."""
    json_path = report_folder / JSON_SUBDIR / f"{page_name.strip()}.json"
    with open(json_path, "w", encoding="utf-8") as fh:
        json.dump(lhr, fh, indent=2)
    return json_path


def write_failures(report_folder: Path, failures: list[PageFailure]) -> Path:
    failures_path = report_folder / FAILURES_FILENAME
    records = [{"pageName": f.page_name, "url": f.url, "error": f.error} for f in failures]
    with open(failures_path, "w", encoding="utf-8") as fh:
        json.dump(records, fh, indent=2)
    return failures_path


def load_failures(report_folder: Path) -> list[PageFailure]:
    """Read failures.json from a report folder. A missing file means none."""
    failures_path = report_folder / FAILURES_FILENAME
    if not failures_path.is_file():
        return []
    try:
        records = json.loads(failures_path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise ReportParseError(f"{failures_path}: {exc}") from exc
    if not isinstance(records, list):
        raise ReportParseError(f"{failures_path}: expected a JSON array")
    return [
        PageFailure(
            page_name=str(record.get("pageName", "")),
            url=str(record.get("url", "")),
            error=str(record.get("error", "")),
        )
        for record in records
        if isinstance(record, dict)
    ]


# ---------------------------------------------------------------------------
# Browser
# ---------------------------------------------------------------------------


def _find_free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind((DEVTOOLS_HOST, 0))
        return sock.getsockname()[1]


def wait_for_devtools(port: int, timeout: float = DEVTOOLS_STARTUP_TIMEOUT) -> str:
    """Poll the DevTools HTTP endpoint until it answers.

    Returns the browser's websocket debugger URL.
    """
    version_url = f"http://{DEVTOOLS_HOST}:{port}/json/version"
    deadline = time.monotonic() + timeout
    last_error: Exception | None = None
    while time.monotonic() < deadline:
        try:
            response = requests.get(version_url, timeout=2)
            if response.status_code == 200:
                return response.json().get("webSocketDebuggerUrl", "")
            last_error = BrowserLaunchError(f"HTTP {response.status_code} from {version_url}")
        except (requests.RequestException, ValueError) as exc:
            last_error = exc
        time.sleep(DEVTOOLS_POLL_INTERVAL)
    raise BrowserLaunchError(f"DevTools endpoint on port {port} not reachable after {timeout:.0f}s: {last_error}")


@contextmanager
def launch_browser(config: AuditConfig):
    """Launch a headless Chromium with remote debugging and yield its handle.

    The browser and the Playwright driver are shut down on every exit path,
    including when the body raises.
    """
    port = _find_free_port()
    launch_args = [f"--remote-debugging-port={port}", *config.chrome_flags]
    playwright = sync_playwright().start()
    browser = None
    try:
        try:
            browser = playwright.chromium.launch(
                headless=True,
                args=launch_args,
                executable_path=config.chrome_path,
            )
        except PlaywrightError as exc:
            raise BrowserLaunchError(f"cannot launch Chromium: {exc}") from exc
        ws_endpoint = wait_for_devtools(port)
        if config.verbose:
            print(f"    Browser ready on port {port} ({ws_endpoint})", file=sys.stderr)
        yield BrowserHandle(port=port, ws_endpoint=ws_endpoint)
    finally:
        if browser is not None:
            try:
                browser.close()
            except PlaywrightError as exc:
                print(f"Warning: browser did not close cleanly: {exc}", file=sys.stderr)
        playwright.stop()


# ---------------------------------------------------------------------------
# Lighthouse
# ---------------------------------------------------------------------------


def build_lighthouse_command(url: str, port: int, config: AuditConfig) -> list[str]:
    """Assemble the lighthouse CLI invocation for one page."""
    is_mobile = config.form_factor == "mobile"
    cmd = [
        *shlex.split(config.lighthouse_cmd),
        url,
        f"--port={port}",
        f"--output={config.output_format}",
        "--output-path=stdout",
        f"--form-factor={config.form_factor}",
        f"--screenEmulation.mobile={str(is_mobile).lower()}",
        f"--screenEmulation.width={config.viewport_width}",
        f"--screenEmulation.height={config.viewport_height}",
        "--screenEmulation.deviceScaleFactor=1",
        "--screenEmulation.disabled=false",
        "--only-categories=" + ",".join(cat_id for cat_id, _, _ in SCORE_CATEGORIES),
    ]
    if not is_mobile:
        cmd.append("--preset=desktop")
    if not config.verbose:
        cmd.append("--quiet")
    return cmd


def run_lighthouse(url: str, port: int, config: AuditConfig) -> dict:
    """Audit one URL through an already running browser. Returns the LHR."""
    cmd = build_lighthouse_command(url, port, config)
    if config.verbose:
        print(f"    $ {shlex.join(cmd)}", file=sys.stderr)
    try:
        completed = subprocess.run(
            cmd,
            capture_output=True,
            text=True,
            encoding="utf-8",
            check=False,
        )
    except FileNotFoundError as exc:
        raise AuditError(
            f"lighthouse CLI not found ({config.lighthouse_cmd}). "
            "Install with `npm i -g lighthouse` or set LIGHTHOUSE_PATH."
        ) from exc

    if completed.returncode != 0:
        stderr_lines = [line for line in (completed.stderr or "").splitlines() if line.strip()]
        detail = stderr_lines[-1] if stderr_lines else "no output"
        raise AuditError(f"lighthouse exited with status {completed.returncode} for {url}: {detail}")

    try:
        lhr = json.loads(completed.stdout)
    except json.JSONDecodeError as exc:
        raise AuditError(f"lighthouse produced invalid JSON for {url}: {exc}") from exc
    if not isinstance(lhr, dict):
        raise AuditError(f"lighthouse produced an unexpected document for {url}")

    runtime_error = lhr.get("runtimeError")
    if isinstance(runtime_error, dict) and runtime_error.get("code"):
        raise AuditError(f"{runtime_error.get('code')} for {url}: {runtime_error.get('message', '')}")

    return lhr


def render_detail_report(result: AuditResult, config: AuditConfig) -> str:
    """Render one audit result to Lighthouse's standalone HTML report."""
    cmd = [
        *shlex.split(config.node_cmd),
        "--input-type=module",
        "-e",
        RENDER_SCRIPT,
        config.renderer_module,
    ]
    try:
        completed = subprocess.run(
            cmd,
            input=json.dumps(result.raw),
            capture_output=True,
            text=True,
            encoding="utf-8",
            check=False,
        )
    except FileNotFoundError as exc:
        raise RendererError(f"node executable not found ({config.node_cmd})") from exc

    if completed.returncode != 0:
        detail = (completed.stderr or "").strip()[:200] or "no output"
        raise RendererError(f"report generator exited with status {completed.returncode}: {detail}")
    return completed.stdout


# ---------------------------------------------------------------------------
# Batch Runner
# ---------------------------------------------------------------------------


def run_batch(pages: list[PageDescriptor], config: AuditConfig, report_folder: Path) -> BatchOutcome:
    """Audit pages one at a time, then aggregate the report folder.

    A page whose browser or audit fails is recorded as a PageFailure and the
    batch moves on. Aggregation errors are reported, not raised.
    """
    outcome = BatchOutcome(report_folder=report_folder)
    total = len(pages)

    for index, page in enumerate(pages, start=1):
        print(f"  [{index}/{total}] Auditing {page.url} ({page.page_name.strip()})...", file=sys.stderr)
        ensure_report_dirs(report_folder)
        try:
            with launch_browser(config) as handle:
                lhr = run_lighthouse(page.url, handle.port, config)
                json_path = save_audit_result(lhr, report_folder, page.page_name)
            outcome.written.append(json_path)
            if config.verbose:
                print(f"    Saved {json_path}", file=sys.stderr)
        except (AuditError, BrowserLaunchError, OSError) as exc:
            print(f"  Error: {exc}", file=sys.stderr)
            outcome.failures.append(PageFailure(page_name=page.page_name.strip(), url=page.url, error=str(exc)))

    try:
        if outcome.failures:
            write_failures(report_folder, outcome.failures)
        outcome.summaries = aggregate_reports(report_folder, config)
        outcome.aggregated = True
    except (LighthouseBatchError, OSError) as exc:
        print(f"Error: aggregation failed for {report_folder}: {exc}", file=sys.stderr)

    return outcome


# ---------------------------------------------------------------------------
# Aggregate Reporter
# ---------------------------------------------------------------------------


def score_to_percent(score: float | None) -> int:
    """Scale a 0-1 category score to 0-100, rounding halves up. None is 0."""
    return math.floor((score or 0) * 100 + 0.5)


def score_band(score: int, bands: ScoreBands = DEFAULT_SCORE_BANDS) -> str:
    return bands.classify(score)


def format_page_size(total_bytes: float | None) -> str:
    """Total byte weight as MB with three decimals; 0.000 when unknown."""
    return f"{(total_bytes or 0) / 1024 / 1000:.3f}"


def format_load_time(interactive_ms: float | None) -> str:
    """Time to interactive in seconds with one decimal; 0.0 when unknown."""
    return f"{(interactive_ms or 0) / 1000:.1f}"


def list_result_files(json_dir: Path) -> list[str]:
    """File names ending in .json, in directory listing order."""
    return [name for name in os.listdir(json_dir) if name.endswith(".json")]


def load_audit_result(json_path: Path) -> AuditResult:
    raw_text = json_path.read_text(encoding="utf-8")
    try:
        data = json.loads(raw_text)
    except json.JSONDecodeError as exc:
        raise ReportParseError(f"{json_path}: {exc}") from exc
    if not isinstance(data, dict):
        raise ReportParseError(f"{json_path}: expected a JSON object")
    try:
        return AuditResult.from_dict(data)
    except ReportParseError as exc:
        raise ReportParseError(f"{json_path}: {exc}") from exc


def build_summary_row(result: AuditResult, file_name: str) -> SummaryRow:
    scores = {
        field_name: score_to_percent(result.category_score(category_id))
        for category_id, field_name, _ in SCORE_CATEGORIES
    }
    return SummaryRow(
        file_name=file_name,
        page_size=format_page_size(result.numeric_value(TOTAL_BYTE_WEIGHT_AUDIT)),
        load_time=format_load_time(result.numeric_value(INTERACTIVE_AUDIT)),
        **scores,
    )


def summaries_to_dataframe(summaries: list[SummaryRow]) -> pd.DataFrame:
    columns = ["file_name", *(name for _, name, _ in SCORE_CATEGORIES), "page_size", "load_time"]
    return pd.DataFrame([vars(row) for row in summaries], columns=columns)


def output_csv(dataframe: pd.DataFrame, output_path: Path) -> str:
    """Write DataFrame to CSV. Returns the file path."""
    output_path.parent.mkdir(parents=True, exist_ok=True)
    dataframe.to_csv(output_path, index=False)
    return str(output_path)


def aggregate_reports(report_folder: Path, config: AuditConfig) -> list[SummaryRow]:
    """Render every stored result and write index.html for a report folder.

    Any read, parse or render error aborts the run before index.html is
    written.
    """
    json_dir = report_folder / JSON_SUBDIR
    html_dir = report_folder / HTML_SUBDIR
    html_dir.mkdir(parents=True, exist_ok=True)

    summaries: list[SummaryRow] = []
    for file_name in list_result_files(json_dir):
        result = load_audit_result(json_dir / file_name)
        html_path = html_dir / (Path(file_name).stem + ".html")
        html_path.write_text(render_detail_report(result, config), encoding="utf-8")
        if config.verbose:
            print(f"    HTML written: {html_path}", file=sys.stderr)
        summaries.append(build_summary_row(result, html_path.name))

    failures = load_failures(report_folder)
    index_html = generate_index_html(summaries, failures, config.score_bands, title=report_folder.name)
    index_path = report_folder / INDEX_FILENAME
    index_path.write_text(index_html, encoding="utf-8")
    output_csv(summaries_to_dataframe(summaries), report_folder / SUMMARY_CSV_FILENAME)

    print(f"Index report written to: {index_path}", file=sys.stderr)
    return summaries


def generate_index_html(
    summaries: list[SummaryRow],
    failures: list[PageFailure] | None = None,
    score_bands: ScoreBands = DEFAULT_SCORE_BANDS,
    title: str = "",
) -> str:
    """Generate the index page linking every detail report.

    The output depends only on its arguments, so re-aggregating an unchanged
    folder reproduces the same bytes.
    """
    table_rows = []
    for row in summaries:
        score_cells = ""
        for _, field_name, _ in SCORE_CATEGORIES:
            score = getattr(row, field_name)
            score_cells += f'<td class="numeric {score_band(score, score_bands)}">{score}</td>'
        file_name = escape(row.file_name)
        href = escape(f"{HTML_SUBDIR}/{quote(row.file_name)}")
        table_rows.append(f"""
            <tr class="summary-row">
                <td><a href="{href}">{file_name}</a></td>
                {score_cells}
                <td class="numeric">{escape(row.page_size)}</td>
                <td class="numeric">{escape(row.load_time)}</td>
            </tr>""")

    for failure in failures or []:
        table_rows.append(f"""
            <tr class="failure-row">
                <td title="{escape(failure.url)}">{escape(failure.page_name)}</td>
                <td colspan="{len(SCORE_CATEGORIES) + 2}" class="error-cell">Error: {escape(failure.error)}</td>
            </tr>""")

    table_rows_html = "\n".join(table_rows)
    score_headers = "".join(f"<th>{header}</th>" for _, _, header in SCORE_CATEGORIES)
    subtitle = f'<p class="meta">Run: {escape(title)}</p>' if title else ""

    html = f"""<!DOCTYPE html>
<html lang="en">
<head>
<meta charset="UTF-8">
<meta name="viewport" content="width=device-width, initial-scale=1.0">
<title>Lighthouse Report</title>
<style>
    * {{ margin: 0; padding: 0; box-sizing: border-box; }}
    body {{ font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; background: #f5f5f5; color: #333; padding: 20px; max-width: 1400px; margin: 0 auto; }}
    header {{ font-size: 1.5rem; font-weight: 700; margin-bottom: 5px; }}
    .meta {{ color: #888; font-size: 0.85rem; margin-bottom: 25px; }}
    table {{ width: 100%; border-collapse: collapse; background: #fff; border-radius: 8px; overflow: hidden; box-shadow: 0 1px 3px rgba(0,0,0,0.1); }}
    th {{ background: #f8f9fa; padding: 10px 12px; text-align: left; font-size: 0.8rem; text-transform: uppercase; color: #666; white-space: nowrap; }}
    td {{ padding: 10px 12px; border-top: 1px solid #eee; font-size: 0.9rem; }}
    tr:nth-child(even) {{ background: #f9f9f9; }}
    .numeric {{ text-align: right; font-variant-numeric: tabular-nums; }}
    .good {{ color: #0cce6b; font-weight: 700; }}
    .average {{ color: #ffa400; font-weight: 700; }}
    .poor {{ color: #ff4e42; font-weight: 700; }}
    .error-cell {{ color: #ff4e42; font-style: italic; }}
    footer {{ margin-top: 40px; padding-top: 15px; border-top: 1px solid #ddd; color: #999; font-size: 0.75rem; text-align: center; }}
</style>
</head>
<body>
<header>Lighthouse Report</header>
{subtitle}
<main>
<table>
    <thead>
        <tr>
            <th>Page</th>
            {score_headers}
            <th>Size (MB)</th>
            <th>Time to Interactive (s)</th>
        </tr>
    </thead>
    <tbody>
        {table_rows_html}
    </tbody>
</table>
</main>
<footer>
    Generated by Lighthouse Batch Audit Tool v{__version__} - Powered by Lighthouse
</footer>
</body>
</html>"""
    return html


def _print_run_summary(outcome: BatchOutcome) -> None:
    """Print page counts, score averages and failures to stderr."""
    print(f"\nSummary:", file=sys.stderr)
    print(f"  Pages audited: {len(outcome.written)}", file=sys.stderr)
    if outcome.summaries:
        dataframe = summaries_to_dataframe(outcome.summaries)
        scores = dataframe["performance"]
        print(f"  Avg performance: {scores.mean():.0f}", file=sys.stderr)
        print(f"  Min performance: {scores.min():.0f}", file=sys.stderr)
        print(f"  Max performance: {scores.max():.0f}", file=sys.stderr)
    if outcome.failures:
        print(f"  Failed pages:  {len(outcome.failures)}", file=sys.stderr)
        for failure in outcome.failures:
            print(f"    {failure.page_name} ({failure.url})", file=sys.stderr)


def _config_or_exit(args: argparse.Namespace) -> AuditConfig:
    try:
        return build_audit_config(args)
    except ConfigError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(1)


# ---------------------------------------------------------------------------
# Subcommand: run
# ---------------------------------------------------------------------------


def cmd_run(args: argparse.Namespace) -> None:
    """Audit every configured page into a fresh report folder."""
    pages = load_pages(args.file)
    config = _config_or_exit(args)
    report_folder = Path(getattr(args, "reports_dir", DEFAULT_REPORTS_DIR)) / new_folder_id()

    print(
        f"Auditing {len(pages)} page(s) ({config.form_factor}, {config.viewport_width}x{config.viewport_height})",
        file=sys.stderr,
    )
    outcome = run_batch(pages, config, report_folder)
    _print_run_summary(outcome)

    index_path = report_folder / INDEX_FILENAME
    if outcome.aggregated and getattr(args, "open_browser", False):
        webbrowser.open(index_path.resolve().as_uri())

    sys.exit(0 if outcome.ok else 1)


# ---------------------------------------------------------------------------
# Subcommand: aggregate
# ---------------------------------------------------------------------------


def cmd_aggregate(args: argparse.Namespace) -> None:
    """Rebuild html/ and index.html for an existing report folder."""
    config = _config_or_exit(args)
    report_folder = resolve_report_folder(args.folder, getattr(args, "reports_dir", DEFAULT_REPORTS_DIR))
    if not (report_folder / JSON_SUBDIR).is_dir():
        print(f"Error: no {JSON_SUBDIR}/ directory in report folder: {report_folder}", file=sys.stderr)
        sys.exit(1)

    try:
        summaries = aggregate_reports(report_folder, config)
    except (LighthouseBatchError, OSError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(1)

    print(f"  Pages in index: {len(summaries)}", file=sys.stderr)
    if getattr(args, "open_browser", False):
        webbrowser.open((report_folder / INDEX_FILENAME).resolve().as_uri())


# ---------------------------------------------------------------------------
# Subcommand: pages
# ---------------------------------------------------------------------------


def cmd_pages(args: argparse.Namespace) -> None:
    """Print the configured page list to stdout."""
    pages = load_pages(args.file)
    width = max(len(page.page_name.strip()) for page in pages)
    for page in pages:
        print(f"{page.page_name.strip():<{width}}  {page.url}")


# ---------------------------------------------------------------------------
# Main
# ---------------------------------------------------------------------------


def main() -> None:
    parser = build_argument_parser()
    args = parse_arguments(parser)

    if not args.command:
        parser.print_help()
        sys.exit(0)

    config_path = Path(args.config) if args.config else discover_config_path()
    config = load_config(config_path)

    profile_name = getattr(args, "profile", None)
    args = apply_profile(args, config, profile_name)

    commands = {
        "run": cmd_run,
        "aggregate": cmd_aggregate,
        "pages": cmd_pages,
    }

    handler = commands.get(args.command)
    if handler:
        handler(args)
    else:
        parser.print_help()
        sys.exit(1)


if __name__ == "__main__":
    main()

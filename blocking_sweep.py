import os
import sys
import time
import uuid
import argparse
import itertools
from datetime import datetime, timezone
from dataclasses import dataclass, field
from functools import partial
from concurrent.futures import ThreadPoolExecutor
from urllib.parse import urlparse

import pandas as pd
import requests

from lighthouse_runner import (
    DEVICES,
    LIGHTHOUSE_BIN,
    AUDIT_TIMEOUT_SEC,
    RetryableAuditError,
    audit_page,
    log,
    log_error,
)
from report_stats import (
    EmptyRunSetError,
    MalformedReportError,
    median_run,
    performance_score,
    summarize_report,
)
from report_writer import write_report


# ================= CONFIG =================

NUM_RUNS = 5
REPORT_DIR = "reports"
URL_HOME = "https://sg.carousell.com"

URL_LISTS_TO_BLOCK = (
    (),
    ("www.googletagmanager.com/*",),
    ("securepubads.g.doubleclick.net/*",),
    ("https://cdn.branch.io/branch-latest.min.js",),
    ("connect.facebook.net/*",),
)

MAX_RETRIES = 2
RETRY_BASE_DELAY = 2.0
PREFLIGHT_TIMEOUT = 20

HEADER = [
    "Blocked URL", "Device", "Overall Score",
    "CLS", "LCP", "TBT", "TTI", "Report Filename"
]

UNAVAILABLE = "unavailable"
FAILED = "FAILED"
MISSING = "-"

REPORT_SEQ = itertools.count(1)


@dataclass(frozen=True)
class SweepConfig:
    url: str = URL_HOME
    runs: int = NUM_RUNS
    devices: tuple = DEVICES
    block_lists: tuple = URL_LISTS_TO_BLOCK
    report_dir: str = REPORT_DIR
    retries: int = MAX_RETRIES
    audit_timeout: float = AUDIT_TIMEOUT_SEC
    workers: int = 1
    lighthouse_bin: str = LIGHTHOUSE_BIN

    def __post_init__(self):
        if isinstance(self.devices, str):
            raise ValueError("devices must be a sequence of profile names")
        if isinstance(self.block_lists, str) or any(isinstance(b, str) for b in self.block_lists):
            raise ValueError("each blocking configuration must be a sequence of patterns, not a string")

        object.__setattr__(self, "devices", tuple(self.devices))
        object.__setattr__(
            self, "block_lists", tuple(tuple(b) for b in self.block_lists)
        )

        if urlparse(self.url).scheme not in ("http", "https") or not urlparse(self.url).netloc:
            raise ValueError(f"not an http(s) URL: {self.url!r}")
        if self.runs < 1:
            raise ValueError("runs must be at least 1")
        if not self.devices:
            raise ValueError("at least one device profile is required")
        unknown = [d for d in self.devices if d not in DEVICES]
        if unknown:
            raise ValueError(f"unknown device profiles: {', '.join(unknown)}")
        if not self.block_lists:
            raise ValueError("at least one blocking configuration is required")
        if self.retries < 0:
            raise ValueError("retries cannot be negative")
        if self.workers < 1:
            raise ValueError("workers must be at least 1")
        if self.audit_timeout <= 0:
            raise ValueError("audit timeout must be positive")


# ================= RECORDS =================

@dataclass
class RunRecord:
    index: int
    timestamp: str
    result: object = None
    file_name: str = ""
    error_type: str = ""
    error_message: str = ""

    @property
    def ok(self):
        return self.result is not None


@dataclass
class SummaryRow:
    blocked: str
    device: str
    perf_score: object
    cls: str
    lcp: str
    tbt: str
    tti: str
    file_name: str

    def values(self):
        score = MISSING if self.perf_score is None else f"{self.perf_score:g}"
        return [
            self.blocked, self.device, score,
            self.cls, self.lcp, self.tbt, self.tti, self.file_name
        ]


@dataclass
class CellResult:
    device: str
    blocked: tuple
    row: SummaryRow
    runs: list = field(default_factory=list)
    error: str = ""

    @property
    def failed(self):
        return bool(self.error)


def blocked_label(blocked):
    return ",".join(blocked) if blocked else "None"


# ================= RUNS =================

def audit_with_retries(audit_fn, url, device, blocked, retries, sleep=time.sleep):
    for attempt in range(retries + 1):
        try:
            return audit_fn(url, device, blocked)
        except RetryableAuditError as e:
            if attempt >= retries:
                raise
            wait = RETRY_BASE_DELAY * (2 ** attempt)
            log_error(f"{e} (retry {attempt + 1}/{retries} in {wait:g}s)")
            sleep(wait)


def run_repeated(config, device, blocked, audit_fn, writer=write_report, sleep=time.sleep):
    """Audit one cell config.runs times in a row, persisting every report."""
    records = []

    for i in range(config.runs):
        now = datetime.now(timezone.utc)
        log(f"Run {i + 1}/{config.runs} [{device}] blocking {blocked_label(blocked)}")

        try:
            result = audit_with_retries(
                audit_fn, config.url, device, blocked, config.retries, sleep
            )
            performance_score(result.lhr)
        except Exception as e:
            log_error(f"Run {i + 1} failed: {type(e).__name__}: {e}")
            records.append(RunRecord(i, now.isoformat(), None, "", type(e).__name__, str(e)))
            continue

        # parallel cells can land in the same second for the same host
        extra = {"tag": f"{device}-{next(REPORT_SEQ)}"} if config.workers > 1 else {}

        record = RunRecord(i, now.isoformat(), result)
        try:
            record.file_name = writer(result.report_html, config.url, config.report_dir, **extra)
            log(f"Report written: {record.file_name}")
        except OSError as e:
            log_error(f"Could not write report for run {i + 1}: {e}")
            record.file_name = UNAVAILABLE
            record.error_type, record.error_message = "WRITE_ERROR", str(e)

        records.append(record)

    return records


def failed_row(device, blocked):
    return SummaryRow(
        blocked_label(blocked), device, None,
        MISSING, MISSING, MISSING, MISSING, FAILED
    )


def run_cell(config, device, blocked, audit_fn, writer=write_report, sleep=time.sleep):
    runs = run_repeated(config, device, blocked, audit_fn, writer, sleep)

    try:
        median = median_run([r for r in runs if r.ok], key=lambda r: r.result.score)
        summary = summarize_report(median.result.lhr)
    except (EmptyRunSetError, MalformedReportError) as e:
        log_error(f"Cell [{device}] blocking {blocked_label(blocked)} failed: {e}")
        return CellResult(device, blocked, failed_row(device, blocked), runs, str(e))

    row = SummaryRow(
        blocked_label(blocked), device, summary["perf_score"],
        summary["cls"], summary["lcp"], summary["tbt"], summary["tti"],
        median.file_name
    )
    return CellResult(device, blocked, row, runs)


# ================= SWEEP =================

def sweep_cells(config):
    return [(device, blocked) for device in config.devices for blocked in config.block_lists]


def run_sweep(config, audit_fn=None, on_cell=None, writer=write_report, sleep=time.sleep):
    """
    Run every (device, blocking configuration) cell, device-major.

    With config.workers == 1 cells run one after another. Otherwise distinct
    cells share a thread pool, but results are still handed to on_cell in
    device-major order.
    """
    if audit_fn is None:
        audit_fn = partial(
            audit_page,
            lighthouse_bin=config.lighthouse_bin,
            timeout=config.audit_timeout
        )

    cells = sweep_cells(config)
    results = []

    def emit(cell):
        results.append(cell)
        if on_cell:
            on_cell(cell)

    if config.workers == 1:
        for device, blocked in cells:
            emit(run_cell(config, device, blocked, audit_fn, writer, sleep))
        return results

    with ThreadPoolExecutor(max_workers=config.workers) as pool:
        futures = [
            pool.submit(run_cell, config, device, blocked, audit_fn, writer, sleep)
            for device, blocked in cells
        ]
        for future in futures:
            emit(future.result())

    return results


# ================= ARTIFACTS =================

RESULT_COLUMNS = [
    "timestamp_utc", "run_id", "device", "blocked", "run", "status",
    "score", "cls", "lcp", "tbt", "tti",
    "report_filename", "error_type", "error_message"
]


def run_metrics(record):
    if not record.ok:
        return {}
    try:
        return summarize_report(record.result.lhr)
    except MalformedReportError:
        return {}


def results_frame(cells, run_id):
    rows = []
    for cell in cells:
        for r in cell.runs:
            m = run_metrics(r)
            rows.append([
                r.timestamp, run_id, cell.device, blocked_label(cell.blocked),
                r.index + 1, "SUCCESS" if r.ok else "FAILURE",
                m.get("perf_score"), m.get("cls"), m.get("lcp"), m.get("tbt"), m.get("tti"),
                r.file_name, r.error_type, r.error_message
            ])
    return pd.DataFrame(rows, columns=RESULT_COLUMNS)


def summary_frame(cells):
    return pd.DataFrame([c.row.values() for c in cells], columns=HEADER)


def write_artifacts(report_dir, run_id, cells):
    os.makedirs(report_dir, exist_ok=True)

    results = results_frame(cells, run_id)
    paths = {
        "results": os.path.join(report_dir, f"{run_id}_results.csv"),
        "errors": os.path.join(report_dir, f"{run_id}_errors.csv"),
        "summary": os.path.join(report_dir, f"{run_id}_summary_report.csv"),
    }

    results.to_csv(paths["results"], index=False)
    results[results["error_type"] != ""].to_csv(paths["errors"], index=False)
    summary_frame(cells).to_csv(paths["summary"], index=False)

    return paths


# ================= PREFLIGHT =================

def preflight(url, timeout=PREFLIGHT_TIMEOUT):
    r = requests.get(url, timeout=timeout)
    r.raise_for_status()
    log(f"Preflight OK: {url} answered {r.status_code}")


# ================= CLI =================

def parse_args(argv=None):
    parser = argparse.ArgumentParser("Third-party blocking Lighthouse sweep")
    parser.add_argument("--url", default=URL_HOME)
    parser.add_argument("--runs", type=int, default=NUM_RUNS)
    parser.add_argument("--device", action="append", choices=DEVICES,
                        help="device profile to audit (repeatable)")
    parser.add_argument("--block", action="append",
                        help="comma-separated URL patterns to block together (repeatable)")
    parser.add_argument("--report-dir", default=REPORT_DIR)
    parser.add_argument("--retries", type=int, default=MAX_RETRIES)
    parser.add_argument("--audit-timeout", type=float, default=AUDIT_TIMEOUT_SEC)
    parser.add_argument("--workers", type=int, default=1)
    parser.add_argument("--lighthouse-bin", default=LIGHTHOUSE_BIN)
    parser.add_argument("--skip-preflight", action="store_true")
    return parser.parse_args(argv)


def parse_block_lists(values):
    if not values:
        return URL_LISTS_TO_BLOCK
    custom = [tuple(p.strip() for p in v.split(",") if p.strip()) for v in values]
    return ((),) + tuple(b for b in custom if b)


def config_from_args(args):
    return SweepConfig(
        url=args.url,
        runs=args.runs,
        devices=tuple(args.device) if args.device else DEVICES,
        block_lists=parse_block_lists(args.block),
        report_dir=args.report_dir,
        retries=args.retries,
        audit_timeout=args.audit_timeout,
        workers=args.workers,
        lighthouse_bin=args.lighthouse_bin,
    )


def print_row(values):
    print("\t".join(str(v) for v in values), flush=True)


# ================= MAIN =================

def main(argv=None, audit_fn=None):
    args = parse_args(argv)

    try:
        config = config_from_args(args)
    except ValueError as e:
        log_error(f"Invalid configuration: {e}")
        return 2

    run_id = f"{datetime.now(timezone.utc).strftime('%Y%m%dT%H%M%SZ')}_{uuid.uuid4().hex[:6]}"

    if not args.skip_preflight:
        try:
            preflight(config.url)
        except requests.RequestException as e:
            log_error(f"Preflight failed for {config.url}: {e}")
            return 2

    log(f"Sweep {run_id}: {len(sweep_cells(config))} cells x {config.runs} runs")

    print_row(HEADER)
    cells = run_sweep(config, audit_fn, on_cell=lambda c: print_row(c.row.values()))

    try:
        paths = write_artifacts(config.report_dir, run_id, cells)
        log(f"Run artifacts: {', '.join(paths.values())}")
    except OSError as e:
        log_error(f"Could not write run artifacts: {e}")

    failed = [c for c in cells if c.failed]
    if failed:
        for c in failed:
            log_error(f"FAILED [{c.device}] blocking {blocked_label(c.blocked)}: {c.error}")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())

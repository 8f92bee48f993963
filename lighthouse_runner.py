import os
import sys
import json
import socket
import subprocess
import tempfile
from contextlib import contextmanager
from dataclasses import dataclass, field

from playwright.sync_api import sync_playwright, Error as PlaywrightError

from report_stats import performance_score


# ================= CONFIG =================

DEVICES = ("desktop", "mobile")

LIGHTHOUSE_BIN = os.environ.get("LIGHTHOUSE_BIN", "lighthouse")
AUDIT_TIMEOUT_SEC = 300


# ================= LOGGING =================

def log(msg):
    print(f"[+] {msg}", file=sys.stderr, flush=True)


def log_error(msg):
    print(f"[!] {msg}", file=sys.stderr, flush=True)


# ================= ERRORS =================

class AuditError(Exception):
    """A single audit run failed and retrying it will not help."""


class RetryableAuditError(AuditError):
    pass


class AuditTimeout(RetryableAuditError):
    pass


# ================= RESULT =================

@dataclass(frozen=True)
class AuditResult:
    url: str
    device: str
    blocked: tuple
    lhr: dict = field(repr=False)
    report_html: str = field(repr=False)

    @property
    def score(self):
        return performance_score(self.lhr)


# ================= BROWSER =================

def free_port():
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


@contextmanager
def chrome_session():
    """Run a headless Chromium that Lighthouse can attach to; yields its port."""
    port = free_port()

    with sync_playwright() as p:
        try:
            browser = p.chromium.launch(
                headless=True,
                args=[f"--remote-debugging-port={port}"]
            )
        except PlaywrightError as e:
            raise RetryableAuditError(f"browser launch failed: {e}") from e

        try:
            yield port
        finally:
            browser.close()


# ================= LIGHTHOUSE =================

def build_lighthouse_command(url, device, blocked, port, output_path,
                             lighthouse_bin=LIGHTHOUSE_BIN):
    if device not in DEVICES:
        raise ValueError(f"unknown device profile: {device}")

    cmd = [
        lighthouse_bin, url,
        f"--port={port}",
        "--only-categories=performance",
        "--output=json",
        "--output=html",
        f"--output-path={output_path}",
        "--quiet",
    ]

    if device == "desktop":
        cmd.append("--preset=desktop")
    else:
        cmd.append("--form-factor=mobile")

    cmd += [f"--blocked-url-patterns={pattern}" for pattern in blocked]
    return cmd


def run_lighthouse(url, device, blocked, port,
                   lighthouse_bin=LIGHTHOUSE_BIN, timeout=AUDIT_TIMEOUT_SEC):
    with tempfile.TemporaryDirectory(prefix="lighthouse-") as tmp:
        base = os.path.join(tmp, "audit")
        cmd = build_lighthouse_command(url, device, blocked, port, base, lighthouse_bin)

        try:
            proc = subprocess.run(cmd, capture_output=True, text=True, timeout=timeout)
        except FileNotFoundError as e:
            raise AuditError(f"lighthouse executable not found: {lighthouse_bin}") from e
        except subprocess.TimeoutExpired as e:
            raise AuditTimeout(f"lighthouse timed out after {timeout}s on {url}") from e

        if proc.returncode != 0:
            detail = (proc.stderr or proc.stdout or "").strip()[-500:]
            raise RetryableAuditError(f"lighthouse exited with {proc.returncode}: {detail}")

        try:
            with open(f"{base}.report.json", encoding="utf-8") as f:
                lhr = json.load(f)
            with open(f"{base}.report.html", encoding="utf-8") as f:
                report_html = f.read()
        except (OSError, ValueError) as e:
            raise RetryableAuditError(f"unreadable lighthouse output: {e}") from e

    return AuditResult(url, device, tuple(blocked), lhr, report_html)


def audit_page(url, device, blocked, lighthouse_bin=LIGHTHOUSE_BIN,
               timeout=AUDIT_TIMEOUT_SEC):
    try:
        with chrome_session() as port:
            return run_lighthouse(url, device, blocked, port, lighthouse_bin, timeout)
    except AuditError:
        raise
    except Exception as e:
        raise AuditError(f"browser session failed: {type(e).__name__}: {e}") from e

import os
from datetime import datetime
from urllib.parse import urlparse


TIMESTAMP_FORMAT = "%Y-%m-%dT%H%M%S%z"


def report_host(url):
    netloc = urlparse(url).netloc
    return netloc.rsplit("@", 1)[-1].replace(":", "_")


def report_filename(url, now=None, tag=None):
    now = now or datetime.now().astimezone()
    stem = f"{report_host(url)}-{now.strftime(TIMESTAMP_FORMAT)}"
    if tag:
        stem = f"{stem}-{tag}"
    return f"{stem}.html"


def write_report(report_html, url, report_dir, now=None, tag=None):
    """Write one rendered report under report_dir and return its file name."""
    os.makedirs(report_dir, exist_ok=True)

    file_name = report_filename(url, now, tag)
    data = report_html.encode("utf-8") if isinstance(report_html, str) else report_html

    with open(os.path.join(report_dir, file_name), "wb") as f:
        f.write(data)

    return file_name

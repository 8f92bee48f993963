"""Shared fixtures: fake Lighthouse results and a scripted audit engine."""

from __future__ import annotations

from typing import Any

import pytest

from lighthouse_runner import AuditResult


def build_lhr(
    score: float = 0.87,
    cls: str = "0.01",
    lcp: str = "2.1 s",
    tbt: str = "120 ms",
    tti: str = "3.4 s",
) -> dict[str, Any]:
    return {
        "categories": {"performance": {"score": score}},
        "audits": {
            "cumulative-layout-shift": {"displayValue": cls},
            "largest-contentful-paint": {"displayValue": lcp},
            "total-blocking-time": {"displayValue": tbt},
            "interactive": {"displayValue": tti},
        },
    }


@pytest.fixture()
def make_lhr():
    return build_lhr


@pytest.fixture()
def make_result():
    """Factory for AuditResult with a given score."""

    def _factory(
        score: float = 0.87,
        *,
        url: str = "https://example.com",
        device: str = "desktop",
        blocked: tuple = (),
        html: str = "<html>report</html>",
        **metrics: str,
    ) -> AuditResult:
        return AuditResult(url, device, blocked, build_lhr(score, **metrics), html)

    return _factory


class ScriptedAudit:
    """Audit callable that records calls and replays scripted outcomes.

    ``outcomes`` maps a call index to either a score or an exception instance;
    unlisted calls succeed with ``default_score``.
    """

    def __init__(self, outcomes: dict[int, Any] | None = None, default_score: float = 0.8):
        self.outcomes = outcomes or {}
        self.default_score = default_score
        self.calls: list[tuple[str, str, tuple]] = []

    def __call__(self, url: str, device: str, blocked: tuple) -> AuditResult:
        index = len(self.calls)
        self.calls.append((url, device, tuple(blocked)))
        outcome = self.outcomes.get(index, self.default_score)
        if isinstance(outcome, Exception):
            raise outcome
        html = f"<html>{device} {index}</html>"
        return AuditResult(url, device, tuple(blocked), build_lhr(outcome), html)


@pytest.fixture()
def scripted_audit():
    return ScriptedAudit

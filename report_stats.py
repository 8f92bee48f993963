import math


# ================= METRICS =================

METRIC_AUDITS = {
    "cls": "cumulative-layout-shift",
    "lcp": "largest-contentful-paint",
    "tbt": "total-blocking-time",
    "tti": "interactive",
}


class MalformedReportError(ValueError):
    pass


class EmptyRunSetError(ValueError):
    pass


# ================= SUMMARY =================

def performance_score(lhr):
    try:
        score = lhr["categories"]["performance"]["score"]
    except (KeyError, TypeError):
        raise MalformedReportError("report has no performance score")

    if not isinstance(score, (int, float)) or math.isnan(score) or not 0 <= score <= 1:
        raise MalformedReportError(f"performance score out of range: {score!r}")
    return score


def summarize_report(lhr):
    """
    Reduce a Lighthouse result to the summary fields.

    perf_score is on a 0-100 scale; the timing fields are Lighthouse's own
    display strings, copied as-is.
    """
    summary = {"perf_score": round(performance_score(lhr) * 100, 2)}

    audits = lhr.get("audits") or {}
    for field, audit_id in METRIC_AUDITS.items():
        display = (audits.get(audit_id) or {}).get("displayValue")
        if display is None:
            raise MalformedReportError(f"report is missing {audit_id}.displayValue")
        summary[field] = display

    return summary


# ================= MEDIAN =================

def median_run(runs, key):
    """
    Pick the run with the median score.

    The sort is stable, so equal scores keep their run order. For an even
    number of runs the lower of the two middle runs is returned.
    """
    if not runs:
        raise EmptyRunSetError("cannot take the median of an empty run set")

    ordered = sorted(runs, key=key)
    half = len(ordered) // 2

    if len(ordered) % 2:
        return ordered[half]
    return ordered[half - 1]

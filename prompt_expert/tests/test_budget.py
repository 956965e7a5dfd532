from prompt_expert.budget.guard import SizeBudgetGuard, truncate_middle


def _guard(**kw):
    params = dict(max_total_bytes=1000, max_items=10, max_token_estimate=10_000)
    params.update(kw)
    return SizeBudgetGuard(**params)


def test_reserve_denied_without_touching_existing():
    guard = _guard()
    assert guard.reserve(600) is True
    assert guard.reserve(600) is False
    usage = guard.usage()
    assert usage.used_bytes == 600
    assert usage.used_items == 1


def test_reserve_denied_once_critical():
    guard = _guard()
    assert guard.reserve(900) is True
    # 90% 已达到临界值，即使还剩 100 字节也拒绝
    assert guard.reserve(10) is False
    assert guard.usage().used_bytes == 900


def test_item_and_token_limits():
    guard = _guard(max_items=2)
    assert guard.reserve(10)
    assert guard.reserve(10)
    assert not guard.reserve(10)

    tokens = _guard(max_token_estimate=100)
    assert tokens.reserve(100, tokens=80)
    assert not tokens.reserve(10, tokens=30)


def test_usage_is_a_snapshot():
    guard = _guard()
    snapshot = guard.usage()
    guard.reserve(100)
    assert snapshot.used_bytes == 0
    assert guard.usage().used_bytes == 100


def test_reset_clears_usage_and_report():
    guard = _guard()
    guard.reserve(950)
    guard.admit("x" * 500, "late.md")
    guard.reset()
    assert guard.usage().used_bytes == 0
    assert guard.reserve(600)
    assert guard.report()["skipped"] == []


def test_truncate_middle_keeps_head_and_tail():
    text = "H" * 1000 + "M" * 1000 + "T" * 1000
    out = truncate_middle(text, 1000)
    assert out.startswith("H" * 500)
    assert out.endswith("T" * 400)
    assert "... truncated 2100 characters ..." in out
    assert truncate_middle("short", 1000) == "short"


def test_admit_truncates_oversized_item():
    guard = SizeBudgetGuard(max_total_bytes=100_000, max_items=10, max_token_estimate=100_000, max_item_chars=2000)
    adm = guard.admit("a" * 5000, "big.txt")
    assert adm.status == "truncated"
    assert len(adm.text) < 2100
    assert "truncated" in adm.text
    assert guard.report()["truncated"][0]["label"] == "big.txt"


def test_admit_fits_remaining_budget_then_skips():
    guard = _guard(max_total_bytes=2000)
    first = guard.admit("a" * 1000, "a.txt")
    assert first.status == "admitted"
    second = guard.admit("b" * 3000, "b.txt")
    assert second.status == "truncated"
    assert guard.usage().used_bytes <= 2000
    third = guard.admit("c" * 500, "c.txt")
    assert third.status == "skipped"
    assert third.text == ""
    report = guard.report()
    assert report["skipped"][0]["label"] == "c.txt"
    assert report["health"] in {"warning", "critical"}
    assert report["recommendations"]


def test_report_healthy_when_small():
    guard = _guard()
    guard.admit("hello", "tiny.txt")
    report = guard.report()
    assert report["health"] == "healthy"
    assert report["summary"]["total_items"] == 1

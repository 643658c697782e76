from __future__ import annotations

from datetime import datetime

import pytest
from starlette.datastructures import Headers

from backend.app.models import AutoReplyRuleRecord
from backend.app.services.auto_responder import find_matching_rule
from backend.app.services.rate_limit import FixedWindowRateLimiter
from backend.app.services.retry import backoff_delay, retry_with_backoff
from backend.app.services.sanitize import (
    canonicalize_whatsapp_phone,
    redact_sensitive_data,
    sanitize_input,
    sanitize_phone,
)
from backend.app.services.webhooks import (
    SignatureVerificationError,
    sign_payload,
    verify_webhook_secret,
    verify_whatsapp_signature,
)


def _rule(rule_id: str, trigger: str, *, minute: int = 0, is_active: bool = True) -> AutoReplyRuleRecord:
    return AutoReplyRuleRecord(
        id=rule_id,
        user_id="tenant-a",
        trigger=trigger,
        reply=f"reply {rule_id}",
        is_active=is_active,
        created_at=datetime(2024, 1, 1, 12, minute),
    )


def test_rule_match_is_case_insensitive_substring() -> None:
    rules = [_rule("r1", "preço")]

    assert find_matching_rule(rules, "Qual o preço?").id == "r1"
    assert find_matching_rule(rules, "QUAL O PREÇO").id == "r1"
    assert find_matching_rule(rules, "bom dia") is None
    assert find_matching_rule(rules, None) is None


def test_oldest_active_rule_wins() -> None:
    rules = [
        _rule("late", "pedido", minute=5),
        _rule("inactive", "pedido", minute=0, is_active=False),
        _rule("early", "pedido", minute=1),
        _rule("blank", "   ", minute=0),
    ]

    assert find_matching_rule(rules, "meu pedido chegou?").id == "early"


def test_backoff_delay_doubles_and_caps() -> None:
    assert [backoff_delay(attempt, 30, 900) for attempt in range(1, 7)] == [
        30,
        60,
        120,
        240,
        480,
        900,
    ]


def test_retry_with_backoff_retries_then_succeeds() -> None:
    delays: list[float] = []
    outcomes = iter([ValueError("busy"), ValueError("busy"), "ok"])

    def flaky() -> str:
        outcome = next(outcomes)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    retried: list[tuple[int, str]] = []
    result = retry_with_backoff(
        flaky,
        max_attempts=3,
        initial_delay=1.0,
        on_retry=lambda attempt, exc: retried.append((attempt, str(exc))),
        sleep=delays.append,
    )

    assert result == "ok"
    assert delays == [1.0, 2.0]
    assert retried == [(1, "busy"), (2, "busy")]


def test_retry_with_backoff_reraises_after_last_attempt() -> None:
    calls: list[int] = []

    def broken() -> None:
        calls.append(1)
        raise ValueError("down")

    with pytest.raises(ValueError):
        retry_with_backoff(broken, max_attempts=2, sleep=lambda _: None)
    assert len(calls) == 2


def test_retry_with_backoff_ignores_unlisted_errors() -> None:
    calls: list[int] = []

    def broken() -> None:
        calls.append(1)
        raise KeyError("missing")

    with pytest.raises(KeyError):
        retry_with_backoff(broken, retry_on=(ValueError,), sleep=lambda _: None)
    assert len(calls) == 1


def test_sanitizers() -> None:
    assert sanitize_input('  <img src=x onerror=alert(1)>oi <a href="javascript:x">link</a> ') == "oi link"
    assert sanitize_phone("+55 (11) 98888-7777") == "5511988887777"
    assert canonicalize_whatsapp_phone("5511988887777@c.us") == "5511988887777"
    assert canonicalize_whatsapp_phone("5511988887777@s.whatsapp.net") == "5511988887777"


def test_redact_sensitive_data_masks_nested_secrets() -> None:
    payload = {"api_key": "k", "data": {"Authorization": "Bearer x", "body": "oi"}, "items": [{"token": "t"}]}

    assert redact_sensitive_data(payload) == {
        "api_key": "[REDACTED]",
        "data": {"Authorization": "[REDACTED]", "body": "oi"},
        "items": [{"token": "[REDACTED]"}],
    }


def test_rate_limiter_resets_after_window() -> None:
    now = [0.0]
    limiter = FixedWindowRateLimiter(2, window_seconds=60.0, clock=lambda: now[0])

    assert limiter.check("agent-1").remaining == 1
    assert limiter.check("agent-1").remaining == 0
    assert limiter.check("agent-1").allowed is False
    assert limiter.check("agent-2").allowed is True

    now[0] = 61.0
    assert limiter.check("agent-1").allowed is True


def test_signature_helpers() -> None:
    body = b'{"event":"message"}'
    signature = sign_payload(body, "secret")

    verify_whatsapp_signature(Headers({"x-webhook-signature": signature}), body, "secret")
    verify_whatsapp_signature(Headers({}), body, "")
    with pytest.raises(SignatureVerificationError):
        verify_whatsapp_signature(Headers({"x-hub-signature-256": signature}), body + b" ", "secret")

    assert verify_webhook_secret("abc", "abc") is True
    assert verify_webhook_secret("abc", "") is False
    assert verify_webhook_secret(None, "abc") is False

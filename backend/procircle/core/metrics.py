from collections import Counter
from threading import Lock
from typing import Counter as CounterType, Dict

_metrics: CounterType[str] = Counter()
_lock = Lock()


def _inc(key: str) -> None:
    with _lock:
        _metrics[key] += 1


def record_discount_issued() -> None:
    _inc("discounts_issued")


def record_discount_rejected(reason: str) -> None:
    _inc("discounts_rejected")
    _inc(f"discounts_rejected:{reason}")


def record_external_failure() -> None:
    _inc("external_failures")


def record_webhook_rejected() -> None:
    _inc("webhooks_rejected")


def record_webhook_duplicate() -> None:
    _inc("webhook_duplicates")


def record_redemption() -> None:
    _inc("redemptions_recorded")


def snapshot() -> Dict[str, int]:
    with _lock:
        return dict(_metrics)


def reset() -> None:
    with _lock:
        _metrics.clear()

from datetime import datetime

from backend.models import (
    QUARANTINE_THRESHOLD,
    STATUS_FAILING,
    STATUS_HEALTHY,
    STATUS_QUARANTINED,
    Source,
    utc_now,
)


def _write(store, source: Source) -> None:
    if not store.update_source(source):
        print(f"SOURCE_STATE_SKIPPED source={source.id} reason=deleted")


def status_for_failures(failures: int) -> str:
    if failures >= QUARANTINE_THRESHOLD:
        return STATUS_QUARANTINED
    if failures >= 1:
        return STATUS_FAILING
    return STATUS_HEALTHY


def record_failure(store, source: Source, message: str, now: datetime | None = None) -> Source:
    source.consecutive_failures += 1
    source.last_error = message
    source.status = status_for_failures(source.consecutive_failures)
    if source.status == STATUS_QUARANTINED:
        source.quarantined_at = now or utc_now()
        print(
            f"SOURCE_QUARANTINED source={source.id} failures={source.consecutive_failures} "
            f"err={message[:200]}"
        )
    _write(store, source)
    return source


def record_success(store, source: Source, now: datetime | None = None) -> Source:
    source.consecutive_failures = 0
    source.status = STATUS_HEALTHY
    source.last_error = ""
    source.last_checked_at = now or utc_now()
    _write(store, source)
    return source

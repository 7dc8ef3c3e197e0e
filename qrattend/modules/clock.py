"""Wall clock used by the session and admission managers."""

from datetime import datetime, timezone


class SystemClock:
    """Returns timezone-aware UTC timestamps."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)

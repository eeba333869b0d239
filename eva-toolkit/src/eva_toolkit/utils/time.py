from datetime import datetime, timezone


def get_current_timestamp() -> int:
    """Current UTC time as epoch milliseconds."""
    return int(datetime.now(timezone.utc).timestamp() * 1000)


def get_current_isoformat() -> str:
    """Current UTC time as an ISO-8601 string with microsecond precision and a 'Z' suffix.

    The fixed width of this format keeps lexical and chronological order identical,
    which message identities rely on.
    """
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")

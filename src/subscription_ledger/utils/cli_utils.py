from rich.console import Console

from subscription_ledger.models.usage import UNLIMITED


def get_rich_console() -> Console: return Console(stderr=True)


def format_limit(value: int) -> str:
    """0 reads as "none", the unlimited sentinel as "∞"."""
    if value >= UNLIMITED:
        return "∞"
    if value == 0:
        return "none"
    return str(value)

"""Human-readable formatting shared by the CLI and the dashboard."""


def format_size(size: int) -> str:
    """Format bytes as human-readable string."""
    for unit in ["B", "K", "M", "G", "T"]:
        if size < 1024:
            return f"{size:.1f}{unit}" if unit != "B" else f"{size}{unit}"
        size = size / 1024
    return f"{size:.1f}P"


def format_mb(mb: int) -> str:
    """Format megabytes, switching to GB at 1024."""
    if mb >= 1024:
        return f"{mb / 1024:.1f} GB"
    return f"{mb} MB"


def format_age(seconds: int | None) -> str:
    """Compact duration: 45s, 12m, 2h05m."""
    if seconds is None:
        return ""
    if seconds < 60:
        return f"{seconds}s"
    if seconds < 3600:
        return f"{seconds // 60}m"
    return f"{seconds // 3600}h{(seconds % 3600) // 60:02d}m"


def truncate(text: str, width: int = 80) -> str:
    """Shorten long text with an ellipsis."""
    return text if len(text) <= width else text[:width] + "..."

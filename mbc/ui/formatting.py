def format_size(size: int) -> str:
    """Format size: 123B, 1.2KB, 45.1MB, 3.2GB. Negative sizes keep their sign."""
    if size < 0:
        return f"-{format_size(-size)}"
    if size == 0:
        return "0B"
    units = ['B', 'KB', 'MB', 'GB', 'TB']
    idx = 0
    val = float(size)
    while val >= 1024.0 and idx < len(units) - 1:
        val /= 1024.0
        idx += 1

    if idx == 0:
        return f"{int(val)}B"
    return f"{val:.1f}{units[idx]}"


def format_ratio(ratio: float) -> str:
    """Format a savings ratio (0.25 -> 25.0%)."""
    return f"{ratio * 100:.1f}%"


def format_time(seconds: float) -> str:
    """Format time: 59s, 01m 01s, 1h 01m."""
    if seconds is None:
        return "--:--"
    if seconds < 60:
        return f"{int(seconds)}s"
    if seconds < 3600:
        return f"{int(seconds // 60):02d}m {int(seconds % 60):02d}s"
    return f"{int(seconds // 3600)}h {int((seconds % 3600) // 60):02d}m"

"""Coarse user-agent classification used for session display and suspicion checks."""

DEVICE_MOBILE = "Mobile"
DEVICE_TABLET = "Tablet"
DEVICE_DESKTOP = "Desktop"


def device_class(user_agent: str) -> str:
    ua = user_agent or ""
    if "Mobile" in ua:
        return DEVICE_MOBILE
    if "Tablet" in ua:
        return DEVICE_TABLET
    return DEVICE_DESKTOP


def browser_family(user_agent: str) -> str:
    ua = user_agent or ""
    # order matters: Edge and Opera also advertise Chrome, Chrome advertises Safari
    if "Firefox" in ua:
        return "Firefox"
    if "Edg/" in ua:
        return "Edge"
    if "OPR/" in ua or "Opera" in ua:
        return "Opera"
    if "Chrome" in ua:
        return "Chrome"
    if "Safari" in ua:
        return "Safari"
    return "Unknown"


def os_family(user_agent: str) -> str:
    ua = user_agent or ""
    if "Windows" in ua:
        return "Windows"
    if "Mac OS X" in ua and "iPhone" not in ua and "iPad" not in ua:
        return "macOS"
    if "Android" in ua:
        return "Android"
    if "iPhone" in ua or "iPad" in ua:
        return "iOS"
    if "Linux" in ua:
        return "Linux"
    return "Unknown"


def fingerprint(user_agent: str) -> str:
    return f"{browser_family(user_agent)}|{os_family(user_agent)}"


def describe(user_agent: str) -> dict:
    return {
        "browser": browser_family(user_agent),
        "os": os_family(user_agent),
        "device": device_class(user_agent),
    }

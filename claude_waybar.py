#!/usr/bin/env python3
"""
Claude Usage for waybar / polybar — single-shot status module

Prints one line of JSON in waybar's custom-module format:
  text, tooltip, class (normal | warning | critical | error), percentage

Shows the 5-hour and 7-day Claude usage limits, and sends a desktop
notification the first time the 5-hour window crosses 50/80/90/95 %.

Setup:
  pip install .
  # ~/.config/waybar/config
  "custom/claude": {"exec": "claude-waybar", "return-type": "json", "interval": 60}
"""

from curl_cffi import requests
from curl_cffi.requests.exceptions import RequestException as CurlRequestError
import json
import logging
import math
import os
import subprocess
import sys
import tempfile
from concurrent.futures import FIRST_EXCEPTION, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable

# ── logging ──────────────────────────────────────────────────────────────────

LOG_FILE = os.path.expanduser("~/.claude_waybar.log")
log = logging.getLogger(__name__)

CONFIG_FILE = os.path.expanduser("~/.config/claude-waybar.json")
STATE_FILE = os.path.expanduser("~/.cache/claude-usage-state.json")

OPENCODE_AUTH_FILE = os.path.expanduser("~/.local/share/opencode/auth.json")

API_BASE = "https://api.anthropic.com/api/oauth"
ANTHROPIC_BETA = "oauth-2025-04-20"

THRESHOLDS = (50, 80, 90, 95)   # 5-hour window, each fires once per reset

DEFAULT_ICON = "󰧑"
DEFAULT_APP_NAME = "Claude"

# ── notification defaults ─────────────────────────────────────────────────────
# Keys stored in config under "notifications": { key: bool }
_NOTIF_DEFAULTS = {
    "usage_warning": True,   # desktop alert when the 5-hour window crosses a threshold
}


def _setup_logging():
    level = os.environ.get("CLAUDE_WAYBAR_LOG_LEVEL", "INFO").upper()
    logging.basicConfig(
        filename=LOG_FILE,
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s %(message)s",
    )


# ── config ────────────────────────────────────────────────────────────────────

def load_config(path: str | None = None) -> dict:
    path = path or CONFIG_FILE
    if os.path.exists(path):
        try:
            with open(path) as f:
                cfg = json.load(f)
            if isinstance(cfg, dict):
                return cfg
            raise ValueError("top-level value is not an object")
        except (ValueError, OSError) as e:
            corrupt = path + ".bak"
            log.warning("Config file corrupt (%s), resetting. Backup at %s", e, corrupt)
            try:
                os.replace(path, corrupt)
            except OSError:
                pass
    return {}


def _notif_enabled(cfg: dict, key: str) -> bool:
    """Return True if the named notification is enabled (defaults to True)."""
    notifs = cfg.get("notifications")
    if not isinstance(notifs, dict):
        notifs = {}
    return bool(notifs.get(key, _NOTIF_DEFAULTS.get(key, True)))


# ── data models ───────────────────────────────────────────────────────────────

def _as_dict(val) -> dict:
    return val if isinstance(val, dict) else {}


def _as_str(val) -> str | None:
    return val if isinstance(val, str) and val else None


def _as_number(val) -> float | None:
    # json.loads accepts NaN and Infinity literals
    if isinstance(val, bool) or not isinstance(val, (int, float)):
        return None
    try:
        num = float(val)
    except OverflowError:
        return None
    return num if math.isfinite(num) else None


def _error_message(data: dict) -> str | None:
    """'Unknown' when an error object is present without a message.

    Falsy non-object values (null, "", false) mean no error.
    """
    err = data.get("error")
    if isinstance(err, dict):
        return _as_str(err.get("message")) or "Unknown"
    if not err:
        return None
    return _as_str(err) or "Unknown"


@dataclass
class Credential:
    token: str
    expires_at: datetime | None = None
    source: str = ""


@dataclass
class UsageWindow:
    utilization: float = 0.0
    resets_at: str | None = None

    @classmethod
    def from_dict(cls, data) -> "UsageWindow":
        data = _as_dict(data)
        util = _as_number(data.get("utilization"))
        return cls(
            utilization=util if util is not None else 0.0,
            resets_at=_as_str(data.get("resets_at")),
        )

    @property
    def pct(self) -> int:
        # floor, never round: 79.9 % must not show (or alert) as 80 %
        return math.floor(self.utilization)


@dataclass
class ExtraUsage:
    is_enabled: bool = False
    used_credits: float = 0.0
    monthly_limit: float | None = None

    @classmethod
    def from_dict(cls, data) -> "ExtraUsage":
        data = _as_dict(data)
        used = _as_number(data.get("used_credits"))
        return cls(
            is_enabled=data.get("is_enabled") is True,
            used_credits=used if used is not None else 0.0,
            monthly_limit=_as_number(data.get("monthly_limit")),
        )


@dataclass
class UsageResponse:
    """
    API response shape (/api/oauth/usage):
      five_hour    → {utilization, resets_at}   drives notifications
      seven_day    → {utilization, resets_at}
      extra_usage  → {is_enabled, used_credits, monthly_limit}
      error        → {message}                   optional
    """
    five_hour: UsageWindow = field(default_factory=UsageWindow)
    seven_day: UsageWindow = field(default_factory=UsageWindow)
    extra_usage: ExtraUsage = field(default_factory=ExtraUsage)
    error: str | None = None

    @classmethod
    def from_dict(cls, data) -> "UsageResponse":
        data = _as_dict(data)
        return cls(
            five_hour=UsageWindow.from_dict(data.get("five_hour")),
            seven_day=UsageWindow.from_dict(data.get("seven_day")),
            extra_usage=ExtraUsage.from_dict(data.get("extra_usage")),
            error=_error_message(data),
        )


@dataclass
class ProfileResponse:
    full_name: str | None = None
    org_name: str | None = None
    organization_type: str | None = None
    rate_limit_tier: str | None = None
    error: str | None = None

    @classmethod
    def from_dict(cls, data) -> "ProfileResponse":
        data = _as_dict(data)
        account = _as_dict(data.get("account"))
        org = _as_dict(data.get("organization"))
        return cls(
            full_name=_as_str(account.get("full_name")),
            org_name=_as_str(org.get("name")),
            organization_type=_as_str(org.get("organization_type")),
            rate_limit_tier=_as_str(org.get("rate_limit_tier")),
            error=_error_message(data),
        )


@dataclass
class NotificationState:
    notified_thresholds: set[int] = field(default_factory=set)
    last_reset: str | None = None

    def to_dict(self) -> dict:
        return {
            "notified_thresholds": sorted(self.notified_thresholds),
            "last_reset": self.last_reset,
        }

    @classmethod
    def from_dict(cls, data) -> "NotificationState":
        """Raises ValueError on anything but the persisted shape."""
        if not isinstance(data, dict):
            raise ValueError("state is not an object")
        thresholds = data.get("notified_thresholds", [])
        last_reset = data.get("last_reset")
        if not isinstance(thresholds, list) or not all(
            isinstance(t, int) and not isinstance(t, bool) for t in thresholds
        ):
            raise ValueError(f"bad notified_thresholds: {thresholds!r}")
        if last_reset is not None and not isinstance(last_reset, str):
            raise ValueError(f"bad last_reset: {last_reset!r}")
        return cls(set(thresholds), last_reset)


# ── time helpers ──────────────────────────────────────────────────────────────

_DAYS = ["Mon", "Tue", "Wed", "Thu", "Fri", "Sat", "Sun"]


def parse_instant(val) -> datetime | None:
    """Normalise an ISO-8601 string or epoch-milliseconds number to an aware
    UTC datetime. Falsy input means "no instant" and returns None; anything
    else that cannot be parsed raises ValueError."""
    if not val:
        return None
    if isinstance(val, bool):
        raise ValueError(f"not an instant: {val!r}")
    if isinstance(val, (int, float)):
        try:
            return datetime.fromtimestamp(val / 1000, tz=timezone.utc)
        except (OverflowError, OSError) as e:
            raise ValueError(f"timestamp out of range: {val!r}") from e
    if isinstance(val, str):
        s = val.strip()
        if s.endswith(("Z", "z")):
            s = s[:-1] + "+00:00"
        dt = datetime.fromisoformat(s)
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        return dt
    raise ValueError(f"not an instant: {val!r}")


def time_until(resets_at: str | None, now: datetime | None = None) -> str:
    """Coarse countdown: '42m', '3h 12m', '4d 6h', 'now' or 'N/A'."""
    try:
        reset = parse_instant(resets_at)
    except ValueError:
        return "N/A"
    if reset is None:
        return "N/A"
    now = now or datetime.now(timezone.utc)
    secs = (reset - now).total_seconds()
    if secs < 0:
        return "now"
    if secs < 3600:
        return f"{int(secs // 60)}m"
    if secs < 86400:
        h, rem = divmod(int(secs), 3600)
        return f"{h}h {rem // 60}m"
    d, rem = divmod(int(secs), 86400)
    return f"{d}d {rem // 3600}h"


def format_reset_time(resets_at: str | None) -> str:
    """Reset instant in local time, e.g. 'Thu 14:05'."""
    try:
        reset = parse_instant(resets_at)
    except ValueError:
        return "N/A"
    if reset is None:
        return "N/A"
    local = reset.astimezone()
    return f"{_DAYS[local.weekday()]} {local.strftime('%H:%M')}"


# ── credentials ───────────────────────────────────────────────────────────────

def _claude_credentials_file() -> str:
    env_dir = os.environ.get("CLAUDE_CONFIG_DIR")
    if env_dir:
        return os.path.join(os.path.expanduser(env_dir), ".credentials.json")
    return os.path.expanduser("~/.claude/.credentials.json")


def _parse_claude(data: dict) -> Credential | None:
    oauth = _as_dict(data.get("claudeAiOauth"))
    token = _as_str(oauth.get("accessToken"))
    if not token:
        return None
    return Credential(token, parse_instant(oauth.get("expiresAt")), "claude")


def _parse_opencode(data: dict) -> Credential | None:
    anthropic = _as_dict(data.get("anthropic"))
    token = _as_str(anthropic.get("access"))
    if not token or anthropic.get("type") != "oauth":
        return None
    return Credential(token, parse_instant(anthropic.get("expires")), "opencode")


@dataclass
class CredentialSource:
    name: str
    path: str
    parse: Callable[[dict], Credential | None]

    def load(self) -> Credential | None:
        """Read this source's credential; any read or shape problem → None."""
        if not os.path.exists(self.path):
            return None
        try:
            with open(self.path) as f:
                data = json.load(f)
            if not isinstance(data, dict):
                raise ValueError("top-level value is not an object")
            return self.parse(data)
        except (ValueError, OSError) as e:
            log.debug("credential source %s unusable: %s", self.name, e)
            return None


def default_sources() -> list[CredentialSource]:
    """Claude CLI first, then OpenCode."""
    return [
        CredentialSource("claude", _claude_credentials_file(), _parse_claude),
        CredentialSource("opencode", OPENCODE_AUTH_FILE, _parse_opencode),
    ]


def is_expired(cred: Credential, now: datetime | None = None) -> bool:
    # no expiry info → assume valid
    if cred.expires_at is None:
        return False
    now = now or datetime.now(timezone.utc)
    return now >= cred.expires_at


def resolve_credential(
    sources: list[CredentialSource] | None = None,
    now: datetime | None = None,
) -> Credential | None:
    """Return the first unexpired credential across the ordered sources."""
    now = now or datetime.now(timezone.utc)
    for source in sources if sources is not None else default_sources():
        cred = source.load()
        if cred is None:
            continue
        if is_expired(cred, now):
            log.debug("credential from %s expired at %s", source.name, cred.expires_at)
            continue
        log.debug("using credential from %s", source.name)
        return cred
    return None


# ── usage API ─────────────────────────────────────────────────────────────────

def _api_get(endpoint: str, token: str) -> dict:
    r = requests.get(
        f"{API_BASE}/{endpoint}",
        headers={
            "Authorization": f"Bearer {token}",
            "anthropic-beta": ANTHROPIC_BETA,
        },
    )
    log.debug("GET %s  status=%s  body=%s", endpoint, r.status_code, r.text[:800])
    try:
        data = r.json()
    except ValueError:
        r.raise_for_status()
        raise
    if not isinstance(data, dict):
        r.raise_for_status()
        raise ValueError(f"unexpected {endpoint} response: {type(data).__name__}")
    # keep the upstream error message for the tooltip instead of a bare status
    if r.status_code >= 400 and "error" not in data:
        r.raise_for_status()
    return data


def fetch_usage_and_profile(token: str) -> tuple[UsageResponse, ProfileResponse]:
    """Fetch /usage and /profile concurrently; the first failure propagates
    without waiting for the other request."""
    pool = ThreadPoolExecutor(max_workers=2)
    try:
        usage_f = pool.submit(_api_get, "usage", token)
        profile_f = pool.submit(_api_get, "profile", token)
        done, _ = wait([usage_f, profile_f], return_when=FIRST_EXCEPTION)
        for f in done:
            if f.exception() is not None:
                raise f.exception()
        return (
            UsageResponse.from_dict(usage_f.result()),
            ProfileResponse.from_dict(profile_f.result()),
        )
    finally:
        pool.shutdown(wait=False, cancel_futures=True)


# ── notification state ────────────────────────────────────────────────────────

class StateStore:
    """JSON file holding which thresholds fired for the current reset window.

    Concurrent pollers are not synchronised: last writer wins, which costs at
    most one duplicate alert.
    """

    def __init__(self, path: str | None = None):
        self.path = path or STATE_FILE

    def load(self) -> NotificationState:
        try:
            with open(self.path) as f:
                return NotificationState.from_dict(json.load(f))
        except FileNotFoundError:
            return NotificationState()
        except (ValueError, OSError) as e:
            log.debug("notification state unreadable (%s), starting fresh", e)
            return NotificationState()

    def save(self, state: NotificationState):
        # unique temp name per writer so overlapping polls never share a file
        tmp = None
        try:
            parent = os.path.dirname(self.path) or "."
            os.makedirs(parent, exist_ok=True)
            fd, tmp = tempfile.mkstemp(
                dir=parent, prefix=".claude-usage-state-", suffix=".tmp"
            )
            with os.fdopen(fd, "w") as f:
                json.dump(state.to_dict(), f)
            os.replace(tmp, self.path)
        except OSError as e:
            log.debug("could not save notification state: %s", e)
            if tmp is not None:
                try:
                    os.remove(tmp)
                except OSError:
                    pass

    def clear(self):
        try:
            os.remove(self.path)
        except FileNotFoundError:
            pass


# ── threshold notifier ────────────────────────────────────────────────────────

@dataclass(frozen=True)
class Alert:
    threshold: int
    urgency: str   # notify-send urgency: "normal" | "critical"
    icon: str


def alert_for(threshold: int) -> Alert:
    # 80 and 90 share urgency; only the marker tells them apart
    if threshold >= 90:
        return Alert(threshold, "critical", "🔴")
    if threshold >= 80:
        return Alert(threshold, "critical", "🟠")
    return Alert(threshold, "normal", "🟡")


def check_thresholds(
    state: NotificationState,
    pct: int,
    reset_marker: str | None,
) -> tuple[NotificationState, list[Alert]]:
    """Apply one poll to the notification state.

    A changed reset marker (including appearing or disappearing) starts a new
    window with nothing notified. Then every threshold <= pct that has not yet
    fired in this window fires once, in ascending order. The input state is
    left untouched.
    """
    if state.last_reset != reset_marker:
        notified: set[int] = set()
    else:
        notified = set(state.notified_thresholds)

    fired = []
    for threshold in THRESHOLDS:
        if pct >= threshold and threshold not in notified:
            fired.append(alert_for(threshold))
            notified.add(threshold)

    return NotificationState(notified, reset_marker), fired


def send_notification(title: str, body: str, urgency: str = "normal",
                      app_name: str = DEFAULT_APP_NAME):
    """notify-send wrapper — fire and forget, silently swallows spawn errors."""
    try:
        subprocess.Popen(
            ["notify-send", "-a", app_name, "-u", urgency, title, body],
            stdout=subprocess.DEVNULL, stderr=subprocess.DEVNULL,
        )
    except (OSError, TypeError, ValueError) as e:
        log.debug("notification suppressed: %s", e)


def send_alerts(alerts: list[Alert], pct: int, resets_at: str | None,
                notify: Callable[[str, str, str], None]):
    reset_in = time_until(resets_at)
    for alert in alerts:
        log.info("usage crossed %d%% (now %d%%)", alert.threshold, pct)
        notify(
            f"{alert.icon} Claude Usage {alert.threshold}%",
            f"5-hour limit at {pct}%\nResets in {reset_in}",
            alert.urgency,
        )


# ── presenter ─────────────────────────────────────────────────────────────────

def css_class(pct: int) -> str:
    # strict '>' on purpose: alerts fire at >= 50/80, the colour changes above
    if pct > 80:
        return "critical"
    if pct > 50:
        return "warning"
    return "normal"


def error_output(text: str, tooltip: str) -> dict:
    return {"text": text, "tooltip": tooltip, "class": "error"}


def no_credentials_output(icon: str = DEFAULT_ICON) -> dict:
    return error_output(
        f"{icon} ?",
        "No valid credentials found\n\nRun 'claude' or 'opencode' to authenticate",
    )


def api_error_output(message: str, icon: str = DEFAULT_ICON) -> dict:
    return error_output(f"{icon} !", f"API error: {message}")


def _plan_label(org_type: str | None) -> str:
    if not org_type:
        return "N/A"
    return org_type.replace("_", " ").title()


def build_tooltip(usage: UsageResponse, profile: ProfileResponse,
                  now: datetime | None = None) -> str:
    five, seven = usage.five_hour, usage.seven_day
    lines = [
        f"{profile.full_name or 'Unknown'} @ {profile.org_name or 'Unknown'}",
        "",
        f"5-hour:  {five.pct:>3}% used",
        f"         resets in {time_until(five.resets_at, now)} ({format_reset_time(five.resets_at)})",
        "",
        f"7-day:   {seven.pct:>3}% used",
        f"         resets in {time_until(seven.resets_at, now)} ({format_reset_time(seven.resets_at)})",
        "",
        f"Plan: {_plan_label(profile.organization_type)}",
        f"Tier: {profile.rate_limit_tier or 'N/A'}",
    ]

    extra = usage.extra_usage
    if extra.is_enabled:
        if extra.monthly_limit:
            lines.append(f"Extra: ${extra.used_credits:.2f} / ${extra.monthly_limit:.2f}")
        else:
            lines.append(f"Extra: ${extra.used_credits:.2f} (no limit)")

    return "\n".join(lines)


def render_output(usage: UsageResponse, profile: ProfileResponse,
                  icon: str = DEFAULT_ICON, now: datetime | None = None) -> dict:
    pct = usage.five_hour.pct
    return {
        "text": f"{icon}   {pct}%",
        "tooltip": build_tooltip(usage, profile, now),
        "class": css_class(pct),
        "percentage": pct,
    }


# ── app ───────────────────────────────────────────────────────────────────────

def run(
    config: dict | None = None,
    store: StateStore | None = None,
    notify: Callable[[str, str, str], None] | None = None,
    fetch: Callable[[str], tuple[UsageResponse, ProfileResponse]] | None = None,
    sources: list[CredentialSource] | None = None,
) -> dict:
    """One poll: credentials → API → alerts → waybar payload."""
    config = config if config is not None else load_config()
    fetch = fetch or fetch_usage_and_profile
    icon = _as_str(config.get("icon")) or DEFAULT_ICON
    if store is None:
        store = StateStore(_as_str(config.get("state_file")))
    if notify is None:
        app_name = _as_str(config.get("app_name")) or DEFAULT_APP_NAME

        def notify(title, body, urgency):
            send_notification(title, body, urgency, app_name)

    cred = resolve_credential(sources)
    if cred is None:
        log.info("no usable credentials")
        return no_credentials_output(icon)

    try:
        usage, profile = fetch(cred.token)
    except (CurlRequestError, ValueError) as e:
        log.error("usage fetch failed: %s", e, exc_info=True)
        return api_error_output(str(e), icon)

    for resp in (usage, profile):
        if resp.error is not None:
            log.warning("API returned error: %s", resp.error)
            return api_error_output(resp.error, icon)

    five = usage.five_hour
    state, alerts = check_thresholds(store.load(), five.pct, five.resets_at)
    if alerts and _notif_enabled(config, "usage_warning"):
        send_alerts(alerts, five.pct, five.resets_at, notify)
    store.save(state)

    return render_output(usage, profile, icon)


def output(result: dict):
    print(json.dumps(result, ensure_ascii=False), flush=True)


def main(argv: list[str] | None = None) -> int:
    argv = sys.argv[1:] if argv is None else argv
    _setup_logging()
    config = load_config()

    if "--reset-state" in argv:
        StateStore(_as_str(config.get("state_file"))).clear()
        log.info("notification state cleared")
        return 0

    if "--no-notify" in argv:
        notifs = config.get("notifications")
        config["notifications"] = {
            **(notifs if isinstance(notifs, dict) else {}),
            "usage_warning": False,
        }

    try:
        result = run(config)
    except Exception as e:
        # the bar must get valid JSON every interval
        log.exception("poll failed")
        result = api_error_output(str(e), _as_str(config.get("icon")) or DEFAULT_ICON)
    output(result)
    return 0


if __name__ == "__main__":
    sys.exit(main())

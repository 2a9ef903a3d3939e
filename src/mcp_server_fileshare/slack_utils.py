import json
import os
import ssl
import sys
import urllib.request

import certifi

SERVER_LABEL = "File Share Relay"


def _truthy(value: str | None) -> bool:
    return (value or "").lower() in {"1", "true", "yes"}


def _log(message: str) -> None:
    print(f"[FileShare][Slack] {message}", file=sys.stderr, flush=True)


def _ssl_context() -> ssl.SSLContext:
    verify_ssl = os.environ.get("FILESHARE_SLACK_VERIFY_SSL", "true").lower() == "true"
    if verify_ssl:
        _log("SSL verify=on (certifi)")
        return ssl.create_default_context(cafile=certifi.where())
    _log("SSL verify=OFF (unverified)")
    return ssl._create_unverified_context()


def post_slack_message(
    text: str, fields: list[tuple[str, str]], color: str = "danger"
) -> tuple[bool, int | None]:
    """Post one attachment-style message to the configured webhook.

    Returns a tuple: (attempted, status_code). Nothing is attempted unless
    alerts are enabled and a webhook URL is set. Never raises.
    """
    alerts_enabled = _truthy(os.environ.get("FILESHARE_SLACK_ALERTS_ENABLED", "false"))
    webhook_url = os.environ.get("FILESHARE_SLACK_WEBHOOK_URL")
    if not (alerts_enabled and webhook_url):
        return False, None

    payload = {
        "text": text,
        "attachments": [
            {
                "color": color,
                "fields": [
                    {"title": "Server", "value": SERVER_LABEL, "short": True},
                    *({"title": title, "value": value, "short": True} for title, value in fields),
                ],
            }
        ],
    }

    try:
        req = urllib.request.Request(
            webhook_url,
            data=json.dumps(payload).encode("utf-8"),
            headers={"Content-Type": "application/json"},
            method="POST",
        )
        _log("sending alert...")
        with urllib.request.urlopen(req, timeout=5, context=_ssl_context()) as resp:
            code = getattr(resp, "status", None) or getattr(resp, "code", None)
            _log(f"sent, status={code}")
            return True, int(code) if code is not None else None
    except Exception as slack_err:  # pragma: no cover
        _log(f"send failed: {slack_err}")
        return True, None


def send_disk_alert_if_needed(
    disk_percent: float, storage_path: str, backend_name: str
) -> tuple[bool, int | None]:
    """Alert when the upload volume is fuller than FILESHARE_SLACK_DISK_THRESHOLD."""
    threshold_pct_str = os.environ.get("FILESHARE_SLACK_DISK_THRESHOLD", "90")
    try:
        threshold_pct = float(threshold_pct_str)
    except ValueError:
        threshold_pct = 90.0

    _log(f"disk={disk_percent:.1f}% threshold={threshold_pct:.1f}%")
    if disk_percent < threshold_pct:
        return False, None

    return post_slack_message(
        f"🚨 File share storage almost full ({disk_percent:.1f}%)",
        [
            ("Backend", backend_name),
            ("Storage Path", storage_path),
            ("Disk Used", f"{disk_percent:.1f}%"),
        ],
    )


def send_sweep_failure_alert(error: str, backend_name: str) -> tuple[bool, int | None]:
    """Alert that an expiry sweep failed; the next sweep still runs on schedule."""
    return post_slack_message(
        "⚠️ File share expiry sweep failed",
        [("Backend", backend_name), ("Error", error[:500])],
        color="warning",
    )

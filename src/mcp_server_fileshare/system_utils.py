import logging
import sys

import psutil

from .slack_utils import send_disk_alert_if_needed

logger = logging.getLogger(__name__)


def log_system_status(
    backend_name: str, storage_path: str = "/", include_process_rss: bool = True
) -> None:
    """Log RAM and upload-volume usage, and send a Slack alert if the disk is nearly full."""
    try:
        vm = psutil.virtual_memory()
        du = psutil.disk_usage(storage_path)
        process_rss_mb: int | None = None
        if include_process_rss:
            try:
                process_rss_mb = psutil.Process().memory_info().rss // (1024**2)
            except psutil.Error:
                process_rss_mb = None

        msg = (
            f"Backends={backend_name} | RAM used={vm.percent:.1f}% "
            f"({vm.used // (1024**2)}MB/{vm.total // (1024**2)}MB) | "
            f"Disk used={du.percent:.1f}% "
            f"({du.used // (1024**3)}GB/{du.total // (1024**3)}GB) at {storage_path}"
            + (f" | Process RSS={process_rss_mb}MB" if process_rss_mb is not None else "")
        )
        logger.info(msg)
        print(f"[FileShare] {msg}", file=sys.stderr, flush=True)

        send_disk_alert_if_needed(du.percent, storage_path, backend_name)
    except Exception as exc:  # pragma: no cover
        logger.debug(f"Failed to log system status: {exc}")

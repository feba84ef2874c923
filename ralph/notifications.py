"""
Desktop notifications for Ralph.

Uses notify-send (freedesktop compliant) when it is installed; otherwise
notifications are silently skipped.
"""

import logging
import shutil
import subprocess

logger = logging.getLogger(__name__)


VALID_URGENCIES = ("low", "normal", "critical")
MAX_NOTIFICATION_LENGTH = 200


def notify(title: str, message: str, urgency: str = "normal"):
    """
    Send desktop notification.

    Args:
        title: Notification title
        message: Notification body
        urgency: One of "low", "normal", "critical"
    """
    if urgency not in VALID_URGENCIES:
        logger.warning(f"Invalid urgency '{urgency}', using 'normal'")
        urgency = "normal"

    if not shutil.which("notify-send"):
        logger.debug("notify-send not found, skipping notification")
        return

    try:
        result = subprocess.run([
            "notify-send",
            "--urgency", urgency,
            "--app-name", "Ralph",
            title,
            message
        ], capture_output=True, text=True, timeout=5)

        if result.returncode != 0:
            logger.warning(f"notify-send failed (exit {result.returncode}): {result.stderr}")
    except subprocess.TimeoutExpired:
        logger.warning("notify-send timed out")
    except OSError as e:
        logger.warning(f"Failed to run notify-send: {e}")


def notify_escalated(story_key: str, reason: str, message: str):
    """Notify that a story was sent to review."""
    if len(message) > MAX_NOTIFICATION_LENGTH:
        message = message[:MAX_NOTIFICATION_LENGTH] + "..."
    notify(f"Ralph: {story_key}", f"Needs review ({reason}): {message}", "critical")


def notify_story_done(story_key: str):
    notify(f"Ralph: {story_key}", "Story done", "low")


def notify_pipeline_complete(stories_completed: int, runtime: str):
    """Notify that the pipeline stopped."""
    notify(
        "Ralph: pipeline complete",
        f"{stories_completed} stories completed in {runtime}",
        "normal"
    )

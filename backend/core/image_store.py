# backend/core/image_store.py
import errno
import json
import logging
import os
import subprocess
import time

from .config import Settings, settings as default_settings
from .errors import ExternalToolFailure, LabError, ValidationError

logger = logging.getLogger(__name__)


class ImageStore:
    """Per-node qcow2 overlays layered on read-only base images."""

    def __init__(self, cfg: Settings | None = None):
        self.cfg = cfg or default_settings

    def _run(self, cmd: list[str], reason: str) -> subprocess.CompletedProcess:
        try:
            return subprocess.run(
                cmd, check=True, capture_output=True, text=True,
                timeout=self.cfg.command_timeout,
            )
        except subprocess.CalledProcessError as e:
            stderr = (e.stderr or "").strip()
            logger.error("%s failed: %s", cmd[0], stderr)
            raise ExternalToolFailure(stderr or f"{cmd[0]} exited with {e.returncode}", reason=reason)
        except subprocess.TimeoutExpired:
            logger.error("%s timed out after %ss", cmd[0], self.cfg.command_timeout)
            raise ExternalToolFailure(f"{cmd[0]} timed out", reason=reason)
        except OSError as e:
            logger.error("Could not execute %s: %s", cmd[0], e)
            raise ExternalToolFailure(f"Could not execute {cmd[0]}: {e}", reason=reason)

    def image_format(self, image_path: str) -> str:
        """Return the on-disk format qemu-img reports for an image."""
        result = self._run(
            [self.cfg.qemu_img_binary, "info", "--output=json", image_path],
            reason="image_inspect_failed",
        )
        try:
            return json.loads(result.stdout)["format"]
        except (ValueError, KeyError) as e:
            raise ExternalToolFailure(f"Unreadable qemu-img info for {image_path}: {e}",
                                      reason="image_inspect_failed")

    def overlay_exists(self, overlay_path: str) -> bool:
        return os.path.exists(overlay_path)

    def check_base_image(self, base_image: str, missing_error: type[LabError] = ValidationError) -> str:
        """Return the format of a usable base image."""
        if not os.path.isfile(base_image):
            raise missing_error(f"Base image not found: {base_image}", reason="base_image_missing")

        base_format = self.image_format(base_image)
        expected = self.cfg.base_image_format
        if expected and base_format != expected:
            raise ExternalToolFailure(
                f"Base image {base_image} is {base_format}, expected {expected}",
                reason="image_format_mismatch",
            )
        return base_format

    def create_overlay(self, base_image: str, overlay_path: str, base_format: str | None = None) -> str:
        """Create a copy-on-write overlay backed by base_image."""
        if base_format is None:
            base_format = self.check_base_image(base_image)

        os.makedirs(os.path.dirname(overlay_path) or ".", exist_ok=True)
        try:
            self._run(
                [self.cfg.qemu_img_binary, "create", "-f", "qcow2",
                 "-F", base_format, "-b", base_image, overlay_path],
                reason="overlay_create_failed",
            )
        except ExternalToolFailure:
            self._discard(overlay_path)
            raise
        logger.info("Created overlay %s on %s (%s)", overlay_path, base_image, base_format)
        return overlay_path

    def delete_overlay(self, overlay_path: str) -> None:
        """Remove an overlay, waiting out transient file locks."""
        for attempt in range(self.cfg.file_lock_retries + 1):
            try:
                os.remove(overlay_path)
                logger.info("Deleted overlay %s", overlay_path)
                return
            except FileNotFoundError:
                return
            except OSError as e:
                locked = isinstance(e, PermissionError) or e.errno in (errno.EBUSY, errno.ETXTBSY)
                if not locked or attempt == self.cfg.file_lock_retries:
                    raise ExternalToolFailure(f"Could not delete {overlay_path}: {e}",
                                              reason="overlay_delete_failed")
                logger.warning("Overlay %s is in use, retrying (%d)", overlay_path, attempt + 1)
                time.sleep(self.cfg.file_lock_retry_delay)

    def wipe_overlay(self, overlay_path: str, base_image: str, base_format: str | None = None) -> str:
        """Discard all node-local disk state by recreating the overlay.

        The base image is checked before the old overlay is touched; every
        failure is an ExternalToolFailure.
        """
        if base_format is None:
            base_format = self.check_base_image(base_image, missing_error=ExternalToolFailure)
        self.delete_overlay(overlay_path)
        return self.create_overlay(base_image, overlay_path, base_format=base_format)

    def _discard(self, overlay_path: str) -> None:
        try:
            os.remove(overlay_path)
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning("Could not remove partial overlay %s: %s", overlay_path, e)

"""
Restore a node's disk from a prior backup.

    START -> METADATA_LOADED -> INFRA_PROVISIONED -> VOLUME_CREATED -> ATTACHED -> DONE

If the volume cannot be created, or cannot be attached, the fallback policy
decides whether to write the raw disk image onto the target device instead:

    VOLUME_CREATE_FAILED | ATTACH_FAILED -> DISK_IMAGE_FALLBACK -> DONE

A volume created by this run is either attached to the target instance or
deleted before the run ends.
"""
import gzip
import logging
import os
import subprocess
import sys
import time
import zlib

from .errors import (
    AttachmentError,
    FallbackDeclinedError,
    FallbackFailedError,
    InfrastructureError,
    VolumeProvisionError,
)
from .infra import TerraformRunner, instance_id_from_outputs
from .metadata import load_restore_metadata
from .models import RestoreContext
from .provider import AWS_ERRORS

logger = logging.getLogger(__name__)

DEFAULT_DISK_IMAGE = "ec2-disk-backup.img.gz"
CHUNK_SIZE = 1024 * 1024


class FallbackPolicy:
    def should_fallback(self, reason: str) -> bool:
        raise NotImplementedError


class AlwaysFallback(FallbackPolicy):
    def should_fallback(self, reason):
        return True


class NeverFallback(FallbackPolicy):
    def should_fallback(self, reason):
        return False


def prompt_yes_no(question):
    while True:
        choice = input(f"{question} (y/n): ").strip().lower()
        if choice in ("y", "yes"):
            return True
        if choice in ("n", "no"):
            return False
        print("Please answer y or n.")


class AskFallback(FallbackPolicy):
    """Defers to a callback, by default an interactive y/n prompt."""

    def __init__(self, callback=None):
        self.callback = callback or prompt_yes_no

    def should_fallback(self, reason):
        return self.callback(f"{reason}. Would you like to restore from the disk image instead?")


def fallback_policy_from_name(name):
    if name == "always":
        return AlwaysFallback()
    if name == "never":
        return NeverFallback()
    if not sys.stdin.isatty():
        logger.warning("stdin is not a terminal; disk image fallback will be declined")
        return NeverFallback()
    return AskFallback()


class DiskImageRestorer:
    """Decompresses a raw disk image (gzip or plain) onto a block device with dd."""

    def __init__(self, device, use_sudo=True, popen=subprocess.Popen):
        self.device = device
        self.use_sudo = use_sudo
        self.popen = popen

    def restore(self, image_path):
        cmd = ["dd", f"of={self.device}", "bs=1M", "status=progress"]
        if self.use_sudo:
            cmd = ["sudo"] + cmd
        opener = gzip.open if image_path.endswith(".gz") else open
        logger.info("Writing %s onto %s...", image_path, self.device)
        try:
            with opener(image_path, "rb") as src:
                proc = self.popen(cmd, stdin=subprocess.PIPE)
                try:
                    for chunk in iter(lambda: src.read(CHUNK_SIZE), b""):
                        proc.stdin.write(chunk)
                finally:
                    proc.stdin.close()
                    ret = proc.wait()
        except (OSError, EOFError, zlib.error) as e:
            raise FallbackFailedError(f"Filesystem restore failed: {e}") from e
        if ret != 0:
            raise FallbackFailedError(f"Filesystem restore failed: dd exited with code {ret}")
        logger.info("Filesystem restored from disk image.")


class RestoreOrchestrator:
    def __init__(self, config, provider, terraform=None, fallback_policy=None,
                 image_restorer=None, sleep=time.sleep):
        self.config = config
        self.provider = provider
        self.terraform = terraform or TerraformRunner(config.terraform_dir)
        self.fallback_policy = fallback_policy or fallback_policy_from_name(config.fallback)
        self.image_restorer = image_restorer or DiskImageRestorer(config.device_name, config.use_sudo)
        self.sleep = sleep
        self.context = None

    def run_restore(self) -> RestoreContext:
        config = self.config
        if not os.path.isdir(config.backup_dir):
            raise FileNotFoundError(f"Backup folder not found: {config.backup_dir}")
        logger.info("Starting restore process using backup folder: %s", config.backup_dir)

        metadata = load_restore_metadata(config.backup_dir, config.node_address)
        ctx = self.context = RestoreContext(metadata)
        ctx.advance("METADATA_LOADED")
        logger.info("Extracted backup metadata: AMI=%s, Snapshot=%s, Volume Size=%s, Root Device=%s",
                    metadata.image_id, metadata.snapshot_id, metadata.volume_size, metadata.root_device)

        ctx.target_instance_id = self._provision_instance()
        ctx.advance("INFRA_PROVISIONED")
        logger.info("Restored EC2 Instance ID: %s", ctx.target_instance_id)
        try:
            ctx.availability_zone = self.provider.describe_instance(ctx.target_instance_id)["AvailabilityZone"]
        except (LookupError,) + AWS_ERRORS as e:
            raise InfrastructureError(f"Cannot describe instance {ctx.target_instance_id}: {e}") from e

        try:
            return self._restore_volume(ctx)
        except BaseException:
            if ctx.owns_volume:
                self.cleanup_volume(ctx)
            raise

    def _provision_instance(self):
        if self.config.instance_id:
            logger.info("Using existing instance %s; skipping terraform apply", self.config.instance_id)
            return self.config.instance_id
        outputs = self.terraform.apply()
        return instance_id_from_outputs(outputs, self.config.instance_output)

    def _restore_volume(self, ctx):
        logger.info("Creating EBS volume from snapshot %s in %s...",
                    ctx.source_manifest.snapshot_id, ctx.availability_zone)
        volume_id = self.provider.create_volume_from_snapshot(
            ctx.source_manifest.snapshot_id, ctx.availability_zone, self.config.volume_type)
        if not volume_id:
            ctx.advance("VOLUME_CREATE_FAILED")
            return self._fallback(ctx, VolumeProvisionError("Snapshot restore failed or returned no volume ID"))

        ctx.created_volume_id = volume_id
        ctx.advance("VOLUME_CREATED")
        logger.info("Created EBS Volume ID: %s", volume_id)

        try:
            self._attach(ctx)
        except AttachmentError as e:
            ctx.advance("ATTACH_FAILED")
            logger.error(str(e))
            self.cleanup_volume(ctx)
            return self._fallback(ctx, e)

        ctx.advance("ATTACHED")
        logger.info("Volume successfully attached.")
        ctx.advance("DONE")
        logger.info("Restore process completed successfully!")
        return ctx

    def _attach(self, ctx):
        volume_id = ctx.created_volume_id
        instance_id = ctx.target_instance_id
        device = self.config.device_name
        try:
            self.provider.wait_volume_available(volume_id)
            existing = self.provider.find_volume_at_device(instance_id, device)
            if existing and existing != volume_id:
                logger.info("Detaching existing volume %s from %s...", existing, device)
                self.provider.detach_volume(existing, instance_id)
                self.provider.wait_volume_available(existing)

            logger.info("Attaching volume %s to instance %s at %s...", volume_id, instance_id, device)
            self.provider.attach_volume(volume_id, instance_id, device)
        except AWS_ERRORS as e:
            raise AttachmentError(f"Failed to attach volume {volume_id}: {e}") from e

        logger.info("Waiting for volume to attach...")
        try:
            state = self.provider.wait_attachment(
                volume_id,
                delay=self.config.attach_poll_delay,
                timeout=self.config.attach_timeout,
                sleep=self.sleep,
            )
        except AWS_ERRORS as e:
            raise AttachmentError(f"Cannot read attachment state of {volume_id}: {e}") from e
        ctx.attachment_state = state
        if state != "attached":
            raise AttachmentError(f"Volume {volume_id} attach failed (state: {state})")

    def cleanup_volume(self, ctx):
        """Best-effort detach, wait and delete of the volume this run created."""
        volume_id = ctx.created_volume_id
        logger.info("Cleaning up volume %s...", volume_id)
        for step, call in (
            ("detach", lambda: self.provider.detach_volume(volume_id)),
            ("wait for available", lambda: self.provider.wait_volume_available(volume_id)),
            ("delete", lambda: self.provider.delete_volume(volume_id)),
        ):
            try:
                call()
            except AWS_ERRORS as e:
                logger.warning("Cleanup of %s: %s step failed: %s", volume_id, step, e)
        ctx.attachment_state = "deleted"
        logger.info("Volume %s cleaned up.", volume_id)

    def _fallback(self, ctx, reason):
        if not self.fallback_policy.should_fallback(str(reason)):
            raise FallbackDeclinedError(f"Disk image restore declined after: {reason}") from reason
        logger.info("Restoring from disk image instead.")
        ctx.advance("DISK_IMAGE_FALLBACK")
        self.image_restorer.restore(self._find_disk_image(ctx))
        ctx.advance("DONE")
        logger.info("Restore process completed from disk image.")
        return ctx

    def _find_disk_image(self, ctx):
        backup_dir = self.config.backup_dir
        if self.config.disk_image:
            candidates = [self.config.disk_image]
        else:
            candidates = [DEFAULT_DISK_IMAGE]
            node = ctx.source_manifest.node_address
            if node:
                candidates += [f"{node}.img.gz", f"{node}.img"]
        for name in candidates:
            path = name if os.path.isabs(name) else os.path.join(backup_dir, name)
            if os.path.isfile(path):
                return path
        raise FallbackFailedError(f"No disk image found in {backup_dir} (looked for {', '.join(candidates)})")

"""
Snapshot coordinator: one EBS snapshot of a node's primary volume, with retries.
"""
from .errors import BackupInterrupted, SnapshotError
from .logsetup import close_node_logger, node_logger
from .models import ManifestEntry, SnapshotAttempt, SnapshotResult, SnapshotState
from .provider import AWS_ERRORS, snapshot_description
from .retry import retry_with_backoff


def interruptible_sleep(context):
    """A sleep that returns early and raises once the run is asked to stop."""
    def _sleep(seconds):
        if context.stop_event.wait(seconds):
            raise BackupInterrupted("Stop requested during backoff")
    return _sleep


class SnapshotCoordinator:
    def __init__(self, context, provider, sleep=None):
        self.context = context
        self.provider = provider
        self.sleep = sleep or interruptible_sleep(context)

    def take_snapshot(self, node) -> SnapshotResult:
        """
        Snapshot node's primary volume and wait for it to complete.

        Returns a completed result carrying the ManifestEntry to record, or a
        failed result carrying a SnapshotError once every attempt is used up.
        The caller owns the manifest; nothing is appended here.
        """
        log = node_logger("snapshot", node.address, self.context.node_path(node.address, "snapshot.log"))
        try:
            return self._take_snapshot(node, log)
        finally:
            close_node_logger(log)

    def _take_snapshot(self, node, log):
        config = self.context.config
        current = {}

        def attempt(number):
            wait_seconds = config.retry_wait * config.backoff_factor ** (number - 1)
            record = SnapshotAttempt(node.address, node.infrastructure_id, number, wait_seconds)
            current["attempt"] = record
            if self.context.stopping:
                raise BackupInterrupted("Stop requested")
            log.info("Attempt %d: Creating snapshot for %s (%s, %s)",
                     number, node.address, node.infrastructure_id, node.role.value)

            volume_id = self.provider.describe_primary_volume(node.infrastructure_id)
            if not volume_id:
                log.warning("No primary volume found for %s (%s)", node.address, node.infrastructure_id)
                record.state = SnapshotState.FAILED
                return None

            record.state = SnapshotState.IN_PROGRESS
            snapshot_id = self.provider.create_snapshot(volume_id, snapshot_description(node))
            if not snapshot_id:
                log.warning("Snapshot creation failed for %s (%s)", node.address, node.infrastructure_id)
                record.state = SnapshotState.FAILED
                return None

            record.snapshot_id = snapshot_id
            log.info("Snapshot %s started for %s (%s)", snapshot_id, node.address, node.infrastructure_id)
            completed = self.provider.wait_snapshot_completed(
                snapshot_id,
                delay=config.snapshot_poll_delay,
                max_attempts=config.snapshot_poll_max_attempts,
            )
            # stopped while waiting: no manifest row
            if self.context.stopping:
                raise BackupInterrupted("Stop requested")
            if not completed:
                log.warning("Snapshot %s failed to complete for %s (%s)",
                            snapshot_id, node.address, node.infrastructure_id)
                record.state = SnapshotState.FAILED
                return None

            record.state = SnapshotState.COMPLETED
            return record

        def on_failure(number, error, wait):
            if error is not None:
                log.warning("Attempt %d for %s (%s) raised: %s", number, node.address, node.infrastructure_id, error)
            log.info("Attempt %d for %s failed, backing off %s seconds", number, node.address, wait)

        try:
            outcome = retry_with_backoff(
                attempt,
                max_attempts=config.retry_max,
                initial_wait=config.retry_wait,
                backoff_factor=config.backoff_factor,
                sleep=self.sleep,
                retry_on=AWS_ERRORS + (LookupError,),
                on_failure=on_failure,
            )
        except BackupInterrupted:
            record = current.get("attempt")
            log.warning("Snapshot of %s (%s) cancelled during attempt %d",
                        node.address, node.infrastructure_id, record.attempt_number if record else 0)
            state = record.state if record else SnapshotState.PENDING
            if state is SnapshotState.COMPLETED:
                state = SnapshotState.IN_PROGRESS
            return SnapshotResult(node, state, record.attempt_number if record else 0, cancelled=True)

        if outcome.succeeded:
            record = outcome.value
            entry = ManifestEntry(node.infrastructure_id, node.address, node.role, record.snapshot_id)
            with open(self.context.node_path(node.address, "snapshot"), "w") as f:
                f.write(record.snapshot_id + "\n")
            log.info("Snapshot %s completed for %s (%s)", record.snapshot_id, node.address, node.infrastructure_id)
            return SnapshotResult(node, SnapshotState.COMPLETED, outcome.attempts, entry=entry)

        error = SnapshotError(node.address, node.infrastructure_id, outcome.attempts)
        log.error(str(error))
        return SnapshotResult(node, SnapshotState.FAILED, outcome.attempts, error=error)

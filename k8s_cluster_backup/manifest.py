"""
The snapshot manifest and the per-node status store.

The manifest is the record of what a backup actually captured: one
`instanceId,nodeAddress,role,snapshotId` line per completed snapshot. Only the
orchestrator thread appends to it.
"""
import json
import logging
import os
import threading
from datetime import datetime
from typing import Dict, List, Optional

from .models import ManifestEntry, PhaseStatus

logger = logging.getLogger(__name__)


class Manifest:
    def __init__(self, path):
        self.path = path
        self._entries: List[ManifestEntry] = []
        if os.path.exists(path):
            with open(path, "r") as f:
                for line_num, line in enumerate(f, 1):
                    line = line.strip()
                    if not line:
                        continue
                    try:
                        self._entries.append(ManifestEntry.from_line(line))
                    except ValueError:
                        logger.warning("Ignoring malformed manifest line %d in %s: %s", line_num, path, line)
        else:
            open(path, "a").close()

    @property
    def entries(self) -> List[ManifestEntry]:
        return list(self._entries)

    def entry_for(self, address) -> Optional[ManifestEntry]:
        for entry in self._entries:
            if entry.node_address == address:
                return entry
        return None

    def append(self, entry: ManifestEntry):
        with open(self.path, "a") as f:
            f.write(entry.to_line() + "\n")
            f.flush()
            os.fsync(f.fileno())
        self._entries.append(entry)

    def __len__(self):
        return len(self._entries)


class NodeStatusStore:
    """
    Per-node phase status persisted as JSON, e.g.

        {"10.0.1.12": {"snapshot": "done", "disk": "failed", "updated": "..."}}

    Disk workers update it from several threads, so writes are serialized and
    replace the file atomically.
    """

    def __init__(self, path):
        self.path = path
        self._lock = threading.Lock()
        self.state = self._load_state()

    def _load_state(self) -> Dict:
        if os.path.exists(self.path):
            try:
                with open(self.path, "r") as f:
                    data = json.load(f)
                if isinstance(data, dict):
                    return data
            except (ValueError, IOError) as e:
                logger.warning("Could not read status store %s: %s", self.path, e)
        return {}

    def _save_state(self):
        tmp_path = f"{self.path}.tmp"
        with open(tmp_path, "w") as f:
            json.dump(self.state, f, indent=2, sort_keys=True)
        os.replace(tmp_path, self.path)

    def get(self, address, phase) -> PhaseStatus:
        value = self.state.get(address, {}).get(phase)
        if value is None:
            return PhaseStatus.NOT_STARTED
        try:
            return PhaseStatus(value)
        except ValueError:
            return PhaseStatus.NOT_STARTED

    def set(self, address, phase, status: PhaseStatus):
        with self._lock:
            record = self.state.setdefault(address, {})
            record[phase] = status.value
            record["updated"] = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
            self._save_state()

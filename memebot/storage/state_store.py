"""JSON state file for open positions and unconfirmed entries.

Document shape::

    {"version": 1,
     "positions": {<position id>: Position},
     "pending":   {<tx hash>: PendingEntry}}

Writes go to a sibling temp file that is fsynced and then moved over the
target with ``os.replace``, so a crash never leaves a half-written file.
"""

from __future__ import annotations

import json
import os
import tempfile
from dataclasses import dataclass, field
from pathlib import Path

from pydantic import ValidationError

from memebot.errors import PersistenceError
from memebot.observability.logger import get_logger
from memebot.storage.models import PendingEntry, Position

log = get_logger(__name__)

STATE_VERSION = 1


@dataclass
class PortfolioState:
    positions: dict[str, Position] = field(default_factory=dict)
    pending: dict[str, PendingEntry] = field(default_factory=dict)


class StateStore:
    """Load and atomically save PortfolioState at ``path``."""

    def __init__(self, path: str | Path):
        self.path = Path(path)

    def load(self) -> PortfolioState:
        if not self.path.exists():
            log.info("state.missing", path=str(self.path))
            return PortfolioState()
        try:
            raw = json.loads(self.path.read_text())
        except (OSError, ValueError) as e:
            raise PersistenceError(f"cannot read state file {self.path}: {e}") from e
        if not isinstance(raw, dict):
            raise PersistenceError(f"state file {self.path} is not a JSON object")

        if "version" in raw:
            raw_positions = raw.get("positions") or {}
            raw_pending = raw.get("pending") or {}
        else:
            # legacy format: a bare {id: position} map
            raw_positions, raw_pending = raw, {}

        try:
            positions = {k: Position.model_validate(v) for k, v in raw_positions.items()}
            pending = {k: PendingEntry.model_validate(v) for k, v in raw_pending.items()}
        except (AttributeError, ValidationError) as e:
            raise PersistenceError(f"corrupt state file {self.path}: {e}") from e

        log.info("state.loaded", path=str(self.path), positions=len(positions), pending=len(pending))
        return PortfolioState(positions=positions, pending=pending)

    def save(self, state: PortfolioState) -> None:
        doc = {
            "version": STATE_VERSION,
            "positions": {k: p.model_dump(mode="json") for k, p in state.positions.items()},
            "pending": {k: p.model_dump(mode="json") for k, p in state.pending.items()},
        }
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp = tempfile.mkstemp(dir=self.path.parent, prefix=f".{self.path.name}.", suffix=".tmp")
            try:
                with os.fdopen(fd, "w") as f:
                    json.dump(doc, f, indent=2, sort_keys=True)
                    f.flush()
                    os.fsync(f.fileno())
                os.replace(tmp, self.path)
            except BaseException:
                Path(tmp).unlink(missing_ok=True)
                raise
        except OSError as e:
            raise PersistenceError(f"cannot write state file {self.path}: {e}") from e
        log.debug("state.saved", path=str(self.path), positions=len(state.positions))

"""Per-container working directory.

The working directory is the only channel between an ADD invocation and the
DEL invocation that later tears the same container down. It holds the raw
provider responses (diagnostic only) and a versioned ENIRecord that DEL
reads back without any other carried-over state.
"""

from __future__ import annotations

import json
import logging
import os
import shutil
import tempfile
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from eni_cni.schemas import ENIRecord

logger = logging.getLogger(__name__)

RECORD_FILE = "record.json"

# Raw provider responses
CREATE_RESPONSE = "eni.json"
ATTACH_RESPONSE = "attach.json"
DETACH_RESPONSE = "detach.json"
DELETE_RESPONSE = "delete.json"


def _write_atomic(path: Path, content: str) -> None:
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(content)
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


class StateStore:
    """Reads and writes one container's working directory."""

    def __init__(self, workdir: Path):
        self.workdir = Path(workdir)

    @property
    def record_path(self) -> Path:
        return self.workdir / RECORD_FILE

    def ensure(self) -> Path:
        self.workdir.mkdir(parents=True, exist_ok=True)
        return self.workdir

    def save_response(self, name: str, response: dict[str, Any]) -> None:
        """Persist a raw provider response for diagnostics."""
        self.ensure()
        _write_atomic(self.workdir / name, json.dumps(response, indent=2, default=str))

    def load_response(self, name: str) -> dict[str, Any] | None:
        path = self.workdir / name
        if not path.is_file():
            return None
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Unreadable provider response {path}: {e}")
            return None

    def save_record(self, record: ENIRecord) -> None:
        self.ensure()
        _write_atomic(self.record_path, record.model_dump_json(indent=2))
        logger.debug(f"Saved ENI record to {self.record_path}")

    def load_record(self, container_id: str, region: str = "") -> ENIRecord | None:
        """Reconstruct the ENI record, or None when nothing was provisioned.

        Falls back to the raw create/attach responses when record.json is
        missing or unreadable.
        """
        if self.record_path.is_file():
            try:
                return ENIRecord.model_validate_json(self.record_path.read_text(encoding="utf-8"))
            except (OSError, ValidationError) as e:
                logger.warning(f"Unreadable ENI record {self.record_path}: {e}")

        create_response = self.load_response(CREATE_RESPONSE)
        if not create_response:
            return None
        try:
            record = ENIRecord.from_provider_responses(
                container_id,
                create_response,
                self.load_response(ATTACH_RESPONSE),
                region=region,
            )
        except (KeyError, ValidationError) as e:
            logger.warning(f"Cannot rebuild ENI record from {self.workdir}: {e}")
            return None
        logger.info(f"Rebuilt ENI record for {record.interface_id} from raw responses")
        return record

    def clear_record(self) -> None:
        """Forget the provisioned ENI once it has been released."""
        for name in (RECORD_FILE, CREATE_RESPONSE, ATTACH_RESPONSE):
            (self.workdir / name).unlink(missing_ok=True)

    def remove(self) -> None:
        shutil.rmtree(self.workdir, ignore_errors=True)

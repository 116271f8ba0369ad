from __future__ import annotations

import json
import mimetypes
import time
from pathlib import Path
from typing import Any, Mapping, MutableMapping


class ImageArtifactStore:
    """Persist generated variations to disk with a JSON metadata sidecar."""

    def __init__(self, output_dir: Path) -> None:
        self._output_dir = Path(output_dir)
        self._output_dir.mkdir(parents=True, exist_ok=True)

    @property
    def output_dir(self) -> Path:
        return self._output_dir

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def save(
        self,
        *,
        session_id: str,
        attempt_id: str,
        strategy_name: str,
        data: bytes,
        mime_type: str,
        metadata: Mapping[str, Any] | None = None,
    ) -> str:
        """Write one image and its sidecar; return the file name used as reference."""

        timestamp = time.strftime("%Y%m%dT%H%M%SZ", time.gmtime())
        base_name = self._build_base_name(session_id, timestamp, strategy_name, attempt_id)
        image_path = self._output_dir / f"{base_name}{self._extension(mime_type)}"
        image_path.write_bytes(data)

        sidecar: MutableMapping[str, Any] = {}
        if isinstance(metadata, Mapping):
            sidecar.update({str(k): v for k, v in metadata.items()})
        sidecar["session_id"] = session_id
        sidecar["attempt_id"] = attempt_id
        sidecar["strategy_name"] = strategy_name
        sidecar["mime_type"] = mime_type
        sidecar["bytes"] = len(data)
        image_path.with_suffix(".json").write_text(
            json.dumps(sidecar, ensure_ascii=False, indent=2),
            encoding="utf-8",
        )
        return image_path.name

    def load(self, ref: str) -> bytes:
        path = self._resolve(ref)
        return path.read_bytes()

    def metadata(self, ref: str) -> Mapping[str, Any]:
        path = self._resolve(ref).with_suffix(".json")
        return json.loads(path.read_text(encoding="utf-8"))

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _resolve(self, ref: str) -> Path:
        path = (self._output_dir / ref).resolve()
        if path.parent != self._output_dir.resolve():
            raise ValueError(f"artifact reference escapes the output directory: {ref}")
        return path

    def _build_base_name(self, session_id: str, timestamp: str, strategy_name: str, attempt_id: str) -> str:
        safe_session = session_id.replace("/", "-").replace("\\", "-")
        safe_strategy = strategy_name.replace("/", "-").replace("\\", "-").replace(" ", "_")
        return f"{timestamp}_{safe_session}_{safe_strategy}_{attempt_id[:8]}"

    def _extension(self, mime_type: str) -> str:
        if mime_type == "image/jpeg":
            return ".jpg"
        return mimetypes.guess_extension(mime_type or "") or ".png"


__all__ = ["ImageArtifactStore"]

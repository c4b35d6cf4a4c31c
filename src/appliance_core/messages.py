"""
Control plane <-> worker message protocol.

A worker writes one JSON object per line on its stdout:

    {"type": "log", "message": "..."}
    {"type": "progress", "appId": "...", "progress": 42, "message": "...", "stage": "download"}

Lines that are not protocol messages are read back as Log messages.
"""
from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Union


TERMINAL_STAGES = frozenset({"completed", "error", "cancelled"})


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass(frozen=True)
class Log:
    message: str

    def to_dict(self) -> Dict[str, Any]:
        return {"type": "log", "message": self.message}


@dataclass(frozen=True)
class ProgressEvent:
    app_id: str
    progress: int
    message: str
    stage: str
    timestamp: str = field(default_factory=_now)

    @property
    def is_final(self) -> bool:
        return self.progress >= 100 or self.stage in TERMINAL_STAGES

    def to_dict(self) -> Dict[str, Any]:
        return {
            "appId": self.app_id,
            "progress": self.progress,
            "message": self.message,
            "stage": self.stage,
            "timestamp": self.timestamp,
        }


WorkerMessage = Union[Log, ProgressEvent]


def clamp_progress(value: Any) -> int:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0
    return int(min(100.0, max(0.0, number)) + 0.5)


def progress_from_dict(data: Mapping[str, Any]) -> ProgressEvent:
    app_id = data.get("appId")
    if not isinstance(app_id, str) or not app_id:
        raise ValueError("progress message without appId")
    return ProgressEvent(
        app_id=app_id,
        progress=clamp_progress(data.get("progress")),
        message=str(data.get("message") or ""),
        stage=str(data.get("stage") or ""),
        timestamp=str(data.get("timestamp") or _now()),
    )


def encode(message: WorkerMessage) -> str:
    if isinstance(message, ProgressEvent):
        payload = {"type": "progress", **message.to_dict()}
    else:
        payload = message.to_dict()
    return json.dumps(payload, ensure_ascii=False)


def decode(line: str) -> WorkerMessage:
    text = line.strip()
    try:
        data = json.loads(text)
    except ValueError:
        return Log(message=text)
    if not isinstance(data, dict):
        return Log(message=text)

    kind = data.get("type")
    if kind == "progress":
        try:
            return progress_from_dict(data)
        except ValueError:
            return Log(message=text)
    if kind == "log":
        return Log(message=str(data.get("message") or ""))
    return Log(message=text)

import json
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List
from uuid import uuid4

from chatbox_core.config.settings import settings
from chatbox_core.domain.conversation import SessionStore
from chatbox_core.domain.exceptions import BusinessError
from chatbox_core.domain.models import Session


class JsonSessionStore(SessionStore):
    """每个会话一个 JSON 文件：{root}/sessions/{session_id}.json。"""

    def __init__(self, root: str | Path | None = None):
        self._root = Path(root or settings.storage_root).resolve()
        self._sessions_root = self._root / "sessions"
        self._sessions_root.mkdir(parents=True, exist_ok=True)

    def get_session(self, session_id: str) -> Session:
        path = self._path(session_id)
        if not path.exists():
            raise BusinessError(code="SESSION_NOT_FOUND", message=session_id)
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            raise BusinessError(code="STORE_READ_ERROR", message=str(e))
        return Session.from_dict(data["session"])

    def list_sessions(self) -> List[Session]:
        items: List[tuple[str, Session]] = []
        for path in self._sessions_root.glob("*.json"):
            try:
                data = json.loads(path.read_text(encoding="utf-8"))
                items.append((data.get("updated_at") or "", Session.from_dict(data["session"])))
            except (OSError, ValueError, KeyError):
                continue
        items.sort(key=lambda pair: pair[0], reverse=True)
        return [s for _, s in items]

    def save_session(self, session: Session) -> None:
        path = self._path(session.session_id)
        tmp_path = self._sessions_root / f"{session.session_id}.{uuid4().hex}.json.tmp"
        obj: Dict[str, Any] = {
            "updated_at": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "session": session.to_dict(),
        }
        try:
            tmp_path.write_text(json.dumps(obj, ensure_ascii=False, default=str), encoding="utf-8")
            os.replace(tmp_path, path)
        except (OSError, TypeError, ValueError) as e:
            raise BusinessError(code="STORE_WRITE_ERROR", message=str(e))

    def delete_session(self, session_id: str) -> None:
        path = self._path(session_id)
        if not path.exists():
            raise BusinessError(code="SESSION_NOT_FOUND", message=session_id)
        try:
            path.unlink()
        except OSError as e:
            raise BusinessError(code="STORE_DELETE_ERROR", message=str(e))

    def _path(self, session_id: str) -> Path:
        # session_id 来自 UI，只取文件名部分，避免路径穿越
        return self._sessions_root / f"{Path(session_id).name}.json"

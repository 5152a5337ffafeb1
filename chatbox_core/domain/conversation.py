from typing import List, Protocol

from .models import Session


class SessionStore(Protocol):
    """会话持久化协议。存入的是快照，读出的也是新对象，互不共享可变状态。"""

    def get_session(self, session_id: str) -> Session:
        ...

    def list_sessions(self) -> List[Session]:
        ...

    def save_session(self, session: Session) -> None:
        ...

    def delete_session(self, session_id: str) -> None:
        ...

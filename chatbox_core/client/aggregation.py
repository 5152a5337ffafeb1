"""把多个目标的回答合并成一条 assistant 消息。"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Literal, Optional, Sequence

MergeStrategy = Literal["concatenate", "summarize", "compare"]
DEFAULT_SEPARATOR = "\n\n---\n\n"


@dataclass(frozen=True)
class Reply:
    text: str
    label: Optional[str] = None


@dataclass(frozen=True)
class MergedMessage:
    text: str
    meta: Dict[str, Any] = field(default_factory=dict)


def build_merged_message(
    replies: Sequence[Reply],
    strategy: MergeStrategy = "concatenate",
    meta: Optional[Dict[str, Any]] = None,
    separator: str = DEFAULT_SEPARATOR,
    labeled: bool = True,
) -> MergedMessage:
    """按给定顺序合并回答。

    - concatenate: 用 separator 连接各块，labeled=False 时不加标签。
    - summarize / compare: 输出带编号标签的块，以空行连接，
      作为后续再问模型时的输入。
    """

    merged_meta = {**(meta or {}), "strategy": strategy}
    if strategy == "concatenate":
        blocks = [_block(i, r) if labeled else r.text for i, r in enumerate(replies)]
        return MergedMessage(text=separator.join(blocks), meta=merged_meta)
    blocks = [_block(i, r) for i, r in enumerate(replies)]
    return MergedMessage(text="\n\n".join(blocks), meta=merged_meta)


def _block(index: int, reply: Reply) -> str:
    label = f" {reply.label}" if reply.label else ""
    return f"[#{index + 1}{label}]\n{reply.text}"

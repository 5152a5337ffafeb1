"""历史记录到提示词的转换。

后端每次只收到本轮问题，多轮上下文由这里把 conversation_records
转换成 chat 消息对（或 completion 模式下的纯文本对话稿）。
"""

from typing import Dict, List, Sequence, Union

from chatbox_core.domain.models import ConversationRecord


def build_conversation_pairs(
    records: Sequence[ConversationRecord],
    is_completion: bool = False,
) -> Union[str, List[Dict[str, str]]]:
    """把历史记录转成 user/assistant 消息列表。

    question 为 None 的 fanout 结果记录只贡献 assistant 消息；
    answer 为空串的记录（fanout 发起时的问题记录）只贡献 user 消息。
    is_completion=True 时返回 "Human: ...\\nAI: ...\\n" 形式的文本。
    """

    if is_completion:
        return "".join(f"Human: {r.question}\nAI: {r.answer}\n" for r in records)
    pairs: List[Dict[str, str]] = []
    for record in records:
        if isinstance(record.question, str):
            pairs.append({"role": "user", "content": record.question})
        if isinstance(record.answer, str) and record.answer:
            pairs.append({"role": "assistant", "content": record.answer})
    return pairs


def recent_records(records: Sequence[ConversationRecord], limit: int) -> List[ConversationRecord]:
    """取最近 limit 条记录，limit 为 0 时不带历史。"""

    if limit <= 0:
        return []
    return list(records[-limit:])

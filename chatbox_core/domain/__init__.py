"""领域层模型与协议。

包含：
- models: Session / Target / ConversationRecord / FanoutRequest 等模型。
- events: 通道事件信封与消息构造、解析函数。
- conversation: SessionStore 持久化协议。
- exceptions: 业务异常类型定义。
"""

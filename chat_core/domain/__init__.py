"""领域层模型与协议。

包含：
- models: Chat / Message 实体、标题推导与持久化记录转换。
- store: KeyValueStore / ChatStore 存储抽象。
- exceptions: 业务异常类型定义。
"""

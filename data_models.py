"""
data_models.py - 数据模型

职责：
- 跨上下文消息的负载模型（submit / cancel / ready / chunk / error）
- HTTP 接口请求与响应模型
"""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


# ================= 通道消息 =================

class SubmitCommand(BaseModel):
    request_id: str
    prompt: str
    provider: Optional[str] = None


class CancelCommand(BaseModel):
    request_id: str


class ReadySignal(BaseModel):
    session_id: str


class WebModelEvent(BaseModel):
    """上行事件：chunk 或 error"""
    request_id: str
    content: Optional[str] = None
    done: bool = False
    error: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.done or self.error is not None


# ================= 站点选择器 =================

class SiteSelectors(BaseModel):
    """按优先级排列的选择器列表"""
    input_box: List[str] = Field(default_factory=list)
    send_btn: List[str] = Field(default_factory=list)
    stop_btn: List[str] = Field(default_factory=list)
    answer: List[str] = Field(default_factory=list)


# ================= HTTP 模型 =================

class ChatMessage(BaseModel):
    role: str = Field(default="user")
    content: Any = Field(default="")


class ChatCompletionRequest(BaseModel):
    model: str = Field(default="web-model")
    messages: List[ChatMessage] = Field(...)
    stream: Optional[bool] = Field(default=True)
    provider: Optional[str] = Field(default=None)
    # temperature、max_tokens 等采样参数网页无法控制，按 pydantic 默认规则忽略


class ModelInfo(BaseModel):
    id: str
    object: str = "model"
    created: int
    owned_by: str = "web-model-bridge"


class ModelsResponse(BaseModel):
    object: str = "list"
    data: List[ModelInfo]


class HealthCheckResult(BaseModel):
    service: str
    version: str
    ready: bool
    session_id: Optional[str] = None
    pending_requests: int = 0
    callers: int = 0
    timestamp: int


class SelectorProbeRequest(BaseModel):
    html: str = Field(...)
    selectors: Optional[Dict[str, List[str]]] = None

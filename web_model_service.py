"""
web_model_service.py - 网页模型请求代理（协调端）

职责：
- 独占唯一的自动化浏览器会话：延迟创建、复用、丢失后重建
- 会话创建是唯一的临界区，并发调用共享同一个进行中的创建任务
- 把多个调用方的请求复用到同一会话，并把上行事件按请求 ID 路由回发起方
"""

import asyncio
import uuid
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

from pydantic import ValidationError

from browser_core import (
    SecureLogger,
    SessionConfig,
    SessionHandle,
    SessionHost,
    SessionUnavailableError,
)
from channels import ChannelClosedError, ChannelMessage, MessageChannel
from data_models import ReadySignal, WebModelEvent


logger = SecureLogger('web_model_service')


DEFAULT_TARGET_URL = "https://chatgpt.com/?oai=1"


@dataclass
class BrokerSettings:
    target_url: str = DEFAULT_TARGET_URL
    window_width: int = 1280
    window_height: int = 800
    # initialize() 等待页面就绪信号的最长时间
    ready_timeout: float = 10.0
    # 会话丢失时是否向所有挂起请求发送错误
    fail_pending_on_session_loss: bool = False
    # 会话探活间隔，0 表示不探活
    health_check_interval: float = 0.0


@dataclass
class PendingRequest:
    caller_id: str
    created_at: float = field(default=0.0)


class BrokerEndpoint:
    """调用方上下文持有的代理端点：绑定调用方身份与其入站事件通道"""

    def __init__(self, service: 'WebModelService', caller_id: str, events: MessageChannel):
        self._service = service
        self.caller_id = caller_id
        self.events = events

    async def initialize(self) -> bool:
        return await self._service.initialize()

    async def send_message(self, prompt: str, provider: str = None) -> str:
        return await self._service.send_message(prompt, self.caller_id, provider=provider)

    def cancel(self, request_id: str):
        self._service.cancel(request_id)

    def close(self):
        """调用方上下文终止"""
        self.events.close()


class WebModelService:
    """网页模型请求代理"""

    def __init__(self, host: SessionHost, settings: BrokerSettings = None,
                 id_factory: Callable[[], str] = None):
        self._host = host
        self.settings = settings or BrokerSettings()
        self._id_factory = id_factory or (lambda: uuid.uuid4().hex)

        self._upstream = MessageChannel("web-model:upstream")
        self._downstream: Optional[MessageChannel] = None
        self._session: Optional[SessionHandle] = None
        self._is_ready = False
        self._ready_event: Optional[asyncio.Event] = None
        self._creating: Optional[asyncio.Task] = None

        self._pending: Dict[str, PendingRequest] = {}
        self._callers: Dict[str, MessageChannel] = {}

        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._intake_task: Optional[asyncio.Task] = None
        self._watch_task: Optional[asyncio.Task] = None
        self._unsubscribe: Optional[Callable[[], None]] = None

    # ================= 生命周期 =================

    @property
    def is_ready(self) -> bool:
        return self._is_ready

    @property
    def session(self) -> Optional[SessionHandle]:
        return self._session

    @property
    def pending_requests(self) -> List[str]:
        return list(self._pending)

    async def start(self):
        """开始接收上行事件与会话信号"""
        if self._intake_task is not None:
            return

        self._loop = asyncio.get_running_loop()
        self._ready_event = asyncio.Event()
        self._intake_task = asyncio.create_task(self._upstream.listen(self._handle_upstream))
        self._unsubscribe = self._host.subscribe(self._on_session_signal)

        if self.settings.health_check_interval > 0:
            self._watch_task = asyncio.create_task(self._watch_session())

        logger.info("网页模型代理已启动")

    async def dispose(self):
        """关闭会话并停止所有后台任务"""
        logger.info("网页模型代理正在关闭")

        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

        creating = self._creating
        for task in (self._watch_task, creating):
            if task is not None and not task.done():
                task.cancel()
        self._watch_task = None

        # 等待被取消的创建任务收尾（关闭创建中的浏览器）
        if creating is not None:
            await asyncio.gather(creating, return_exceptions=True)

        session = self._session
        if session is not None:
            self._drop_session()
            await asyncio.to_thread(self._host.close_session, session)

        self._upstream.close()
        if self._intake_task is not None:
            await self._intake_task
            self._intake_task = None

        for channel in self._callers.values():
            channel.close()
        self._callers.clear()
        self._pending.clear()

    def connect(self, caller_id: str = None) -> BrokerEndpoint:
        """注册调用方上下文"""
        caller_id = caller_id or uuid.uuid4().hex
        channel = self._callers.get(caller_id)
        if channel is None or channel.closed:
            channel = MessageChannel(f"web-model:stream:{caller_id}")
            self._callers[caller_id] = channel
        logger.debug(f"调用方已连接: {caller_id}")
        return BrokerEndpoint(self, caller_id, channel)

    async def initialize(self) -> bool:
        """确保会话存在并返回页面是否已就绪"""
        await self._ensure_session()

        if not self._is_ready and self.settings.ready_timeout > 0:
            try:
                await asyncio.wait_for(self._ready_event.wait(), self.settings.ready_timeout)
            except asyncio.TimeoutError:
                logger.warning(f"页面在 {self.settings.ready_timeout:g}s 内未就绪")

        return self._is_ready

    ensure_ready = initialize

    # ================= 请求 =================

    async def send_message(self, prompt: str, caller_id: str, provider: str = None) -> str:
        """提交提示词，立即返回请求 ID（不等待回答）"""
        await self._ensure_session()

        if self._session is None or self._session.closed or self._downstream is None:
            raise SessionUnavailableError("网页模型会话不可用")

        request_id = self._id_factory()
        while request_id in self._pending:
            request_id = self._id_factory()

        self._pending[request_id] = PendingRequest(caller_id=caller_id, created_at=self._loop.time())

        try:
            self._downstream.send("submit", {
                "request_id": request_id,
                "prompt": prompt,
                "provider": provider,
            })
        except ChannelClosedError:
            self._pending.pop(request_id, None)
            raise SessionUnavailableError("网页模型会话已关闭")

        logger.info(f"[{request_id[:8]}] 请求已提交 (caller={caller_id})")
        return request_id

    def cancel(self, request_id: str):
        if not request_id:
            return

        if self._downstream is not None and not self._downstream.closed:
            try:
                self._downstream.send("cancel", {"request_id": request_id})
            except ChannelClosedError:
                logger.debug(f"[{request_id[:8]}] 下行通道已关闭，跳过取消命令")

        if self._pending.pop(request_id, None) is not None:
            logger.info(f"[{request_id[:8]}] 请求已取消")

    def status(self) -> dict:
        return {
            "ready": self._is_ready,
            "session_id": self._session.session_id if self._session else None,
            "creating": self._creating is not None,
            "pending_requests": list(self._pending),
            "callers": sum(1 for channel in self._callers.values() if not channel.closed),
        }

    # ================= 上行事件 =================

    def _handle_upstream(self, message: ChannelMessage):
        if message.kind == "ready":
            self._handle_ready(message.payload)
            return

        if message.kind not in ("chunk", "error"):
            logger.debug(f"忽略未知上行消息: {message.kind}")
            return

        try:
            event = WebModelEvent(**message.payload)
        except ValidationError as e:
            logger.warning(f"上行事件格式错误: {e}")
            return

        if message.kind == "error":
            event.error = event.error or "Unknown error"
            event.done = True

        self._forward(event)

    def _handle_ready(self, payload: dict):
        try:
            signal = ReadySignal(**payload)
        except ValidationError as e:
            logger.warning(f"就绪信号格式错误: {e}")
            return

        if self._session is None or signal.session_id != self._session.session_id:
            logger.debug(f"忽略过期会话的就绪信号: {signal.session_id[:8]}")
            return

        logger.info("页面观察器已就绪")
        self._is_ready = True
        self._ready_event.set()

    def _forward(self, event: WebModelEvent):
        pending = self._pending.get(event.request_id)
        if pending is None:
            return

        channel = self._callers.get(pending.caller_id)
        if channel is None or channel.closed:
            logger.debug(f"[{event.request_id[:8]}] 调用方已离开，丢弃事件")
            self._pending.pop(event.request_id, None)
            self._callers.pop(pending.caller_id, None)
            return

        try:
            channel.send("stream", event.model_dump(exclude_none=True))
        except ChannelClosedError:
            self._pending.pop(event.request_id, None)
            return

        if event.is_terminal:
            self._pending.pop(event.request_id, None)

    # ================= 会话 =================

    async def _ensure_session(self):
        if self._session is not None and not self._session.closed:
            return

        if self._loop is None:
            await self.start()

        creating = self._creating
        if creating is None:
            creating = asyncio.create_task(self._create_session())
            self._creating = creating
            creating.add_done_callback(self._creation_finished)

        # shield：某个等待方被取消时不影响其他等待方
        await asyncio.shield(creating)

    def _creation_finished(self, task: asyncio.Task):
        if self._creating is task:
            self._creating = None

    async def _create_session(self):
        logger.info("创建网页模型会话")
        self._is_ready = False
        self._ready_event.clear()

        downstream = MessageChannel("web-model:downstream")
        config = SessionConfig(
            url=self.settings.target_url,
            downstream=downstream,
            upstream=self._upstream,
            width=self.settings.window_width,
            height=self.settings.window_height,
        )

        creation = asyncio.ensure_future(asyncio.to_thread(self._host.create_session, config))
        try:
            handle = await asyncio.shield(creation)
        except asyncio.CancelledError:
            downstream.close()
            await self._close_abandoned(creation)
            raise
        except SessionUnavailableError:
            raise
        except Exception as e:
            logger.error(f"会话创建失败: {e}")
            raise SessionUnavailableError(f"会话创建失败: {e}") from e

        self._session = handle
        self._downstream = downstream

        try:
            await asyncio.to_thread(self._host.load_target_page, handle, self.settings.target_url)
        except Exception as e:
            logger.error(f"目标页面加载失败: {e}")
            self._drop_session()
            await asyncio.to_thread(self._host.close_session, handle)
            if isinstance(e, SessionUnavailableError):
                raise
            raise SessionUnavailableError(f"目标页面加载失败: {e}") from e

    async def _close_abandoned(self, creation: asyncio.Future):
        """创建被取消时工作线程仍在运行，等它返回后关闭会话"""
        try:
            handle = await creation
        except Exception as e:
            logger.debug(f"已取消的会话创建失败: {e}")
            return

        logger.warning(f"会话创建已取消，关闭会话: {handle.session_id[:8]}")
        await asyncio.to_thread(self._host.close_session, handle)

    def _on_session_signal(self, signal: str, handle: SessionHandle, detail: Optional[str]):
        # 宿主可能在工作线程中发出信号，切回本事件循环处理
        if self._loop is None or self._loop.is_closed():
            return
        self._loop.call_soon_threadsafe(self._apply_session_signal, signal, handle.session_id, detail)

    def _apply_session_signal(self, signal: str, session_id: str, detail: Optional[str]):
        current = self._session
        if signal == SessionHost.SIGNAL_LOADED:
            logger.info(f"会话页面已加载: {session_id[:8]}")
        elif signal == SessionHost.SIGNAL_LOAD_FAILED:
            logger.error(f"会话页面加载失败: {detail}")
            if current is not None and current.session_id == session_id:
                self._handle_session_lost("页面加载失败")
        elif signal == SessionHost.SIGNAL_CLOSED:
            if current is not None and current.session_id == session_id:
                self._handle_session_lost("会话已关闭")

    def _drop_session(self):
        self._session = None
        self._is_ready = False
        if self._ready_event is not None:
            self._ready_event.clear()
        if self._downstream is not None:
            self._downstream.close()
            self._downstream = None

    def _handle_session_lost(self, reason: str):
        logger.warning(f"网页模型会话丢失: {reason}")
        self._drop_session()

        if not self.settings.fail_pending_on_session_loss or not self._pending:
            return

        logger.warning(f"向 {len(self._pending)} 个挂起请求发送失败事件")
        for request_id in list(self._pending):
            self._forward(WebModelEvent(
                request_id=request_id, error="Web model session closed", done=True
            ))

    async def _watch_session(self):
        interval = self.settings.health_check_interval
        while True:
            await asyncio.sleep(interval)
            session = self._session
            if session is None or self._creating is not None:
                continue
            alive = await asyncio.to_thread(self._host.is_alive, session)
            if not alive and self._session is session:
                self._handle_session_lost("探活失败")
                await asyncio.to_thread(self._host.close_session, session)

"""
web_model_client.py - 调用方门面

职责：
- 向应用代码提供 send_message / cancel / stream / ask 接口
- 延迟触发代理初始化（同一时刻只有一个初始化尝试）
- 按请求 ID 把入站事件分发给对应回调，终止事件后注销监听
"""

import asyncio
from dataclasses import dataclass
from typing import AsyncIterator, Callable, Dict, Optional, Tuple

from browser_core import SecureLogger, WebModelError
from channels import ChannelMessage


logger = SecureLogger('web_model_client')


UpdateCallback = Callable[[str, bool], None]
ErrorCallback = Callable[[Exception], None]


@dataclass
class StreamListener:
    on_update: Optional[UpdateCallback] = None
    on_error: Optional[ErrorCallback] = None
    last_content: Optional[str] = None


class WebModelClient:
    """网页模型客户端"""

    def __init__(self, endpoint):
        self._endpoint = endpoint
        self._initialized = False
        self._initialize_task: Optional[asyncio.Task] = None
        self._listeners: Dict[str, StreamListener] = {}
        self._listen_task: Optional[asyncio.Task] = None

    @property
    def active_requests(self):
        return list(self._listeners)

    # ================= 事件接收 =================

    def attach(self) -> asyncio.Task:
        """开始监听入站事件通道"""
        if self._listen_task is None or self._listen_task.done():
            self._listen_task = asyncio.create_task(self._endpoint.events.listen(self._on_message))
        return self._listen_task

    async def detach(self):
        """关闭调用方上下文并等待监听结束"""
        self._endpoint.close()
        if self._listen_task is not None:
            await self._listen_task
            self._listen_task = None
        self._listeners.clear()

    def _on_message(self, message: ChannelMessage):
        if message.kind == "stream":
            self.handle_event(message.payload)

    def handle_event(self, payload: dict):
        request_id = payload.get("request_id")
        listener = self._listeners.get(request_id)
        if listener is None:
            return

        error = payload.get("error")
        if error:
            self._listeners.pop(request_id, None)
            self._invoke(listener.on_error, WebModelError(error))
            return

        content = payload.get("content")
        done = bool(payload.get("done"))

        if content is not None and (done or content != listener.last_content):
            listener.last_content = content
            self._invoke(listener.on_update, content, done)

        if done:
            self._listeners.pop(request_id, None)

    @staticmethod
    def _invoke(callback, *args):
        if callback is None:
            return
        try:
            callback(*args)
        except Exception as e:
            logger.error(f"回调执行异常: {e}", exc_info=True)

    # ================= 初始化 =================

    async def ensure_initialized(self) -> bool:
        if self._initialized:
            return True

        task = self._initialize_task
        if task is None:
            task = asyncio.create_task(self._run_initialize())
            self._initialize_task = task
            task.add_done_callback(self._initialize_finished)

        result = await asyncio.shield(task)
        self._initialized = result
        return result

    initialize = ensure_initialized

    def _initialize_finished(self, task: asyncio.Task):
        if self._initialize_task is task:
            self._initialize_task = None

    async def _run_initialize(self) -> bool:
        try:
            return bool(await self._endpoint.initialize())
        except Exception as e:
            logger.error(f"网页模型初始化失败: {e}")
            return False

    # ================= 请求 =================

    async def send_message(self, prompt: str, on_update: UpdateCallback = None,
                           on_error: ErrorCallback = None, provider: str = None) -> str:
        await self.ensure_initialized()

        request_id = await self._endpoint.send_message(prompt, provider=provider)
        self._listeners[request_id] = StreamListener(on_update=on_update, on_error=on_error)
        return request_id

    def cancel(self, request_id: str):
        if not request_id:
            return
        self._endpoint.cancel(request_id)
        self._listeners.pop(request_id, None)

    async def stream(self, prompt: str, provider: str = None) -> AsyncIterator[Tuple[str, bool]]:
        """
        以异步迭代器形式输出 (content, done)

        content 是回答全文快照；消费方提前退出时自动取消请求。
        """
        queue: asyncio.Queue = asyncio.Queue()

        request_id = await self.send_message(
            prompt,
            on_update=lambda content, done: queue.put_nowait((content, done, None)),
            on_error=lambda error: queue.put_nowait((None, True, error)),
            provider=provider,
        )

        finished = False
        try:
            while True:
                content, done, error = await queue.get()
                if error is not None:
                    finished = True
                    raise error
                if done:
                    finished = True
                yield content, done
                if done:
                    return
        finally:
            if not finished:
                logger.info(f"[{request_id[:8]}] 流被提前关闭，取消请求")
                self.cancel(request_id)

    async def ask(self, prompt: str, provider: str = None, timeout: float = None) -> str:
        """等待完整回答；超时会取消请求并抛出 asyncio.TimeoutError"""
        loop = asyncio.get_running_loop()
        future = loop.create_future()

        def on_update(content: str, done: bool):
            if done and not future.done():
                future.set_result(content)

        def on_error(error: Exception):
            if not future.done():
                future.set_exception(error)

        request_id = await self.send_message(prompt, on_update=on_update, on_error=on_error, provider=provider)

        try:
            return await asyncio.wait_for(future, timeout)
        except (asyncio.TimeoutError, asyncio.CancelledError):
            self.cancel(request_id)
            raise

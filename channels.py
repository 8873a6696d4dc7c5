"""
channels.py - 跨上下文消息通道

职责：
- 单向、有序、异步的消息传递（下行：submit/cancel，上行：chunk/error/ready）
- 负载在发送时序列化为 JSON，接收端拿到的永远是副本，上下文之间不共享对象
- 发送端可以在任意线程，接收端绑定到首次接收时所在的事件循环
"""

import asyncio
import inspect
import json
import threading
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Deque, Dict, Optional, Union

from browser_core import SecureLogger


logger = SecureLogger('channels')


class ChannelClosedError(Exception):
    """通道已关闭"""
    pass


@dataclass
class ChannelMessage:
    kind: str
    payload: Dict[str, Any] = field(default_factory=dict)


MessageHandler = Callable[[ChannelMessage], Union[None, Awaitable[None]]]


class MessageChannel:
    """单向消息通道"""

    def __init__(self, name: str):
        self.name = name
        self._buffer: Deque[str] = deque()
        self._lock = threading.Lock()
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._wakeup: Optional[asyncio.Event] = None
        self._closed = False

    def __repr__(self):
        return f"<MessageChannel {self.name} pending={len(self._buffer)} closed={self._closed}>"

    @property
    def closed(self) -> bool:
        return self._closed

    def __len__(self) -> int:
        with self._lock:
            return len(self._buffer)

    # ===== 发送端 =====

    def send(self, kind: str, payload: Dict[str, Any] = None):
        """发送消息（线程安全）"""
        frame = json.dumps({"kind": kind, "payload": payload or {}}, ensure_ascii=False)

        with self._lock:
            if self._closed:
                raise ChannelClosedError(f"通道已关闭: {self.name}")
            self._buffer.append(frame)
            loop = self._loop

        self._notify(loop)

    def close(self):
        """关闭通道，已缓冲的消息仍可被读出"""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            loop = self._loop

        self._notify(loop)

    def _notify(self, loop: Optional[asyncio.AbstractEventLoop]):
        if loop is None or self._wakeup is None:
            return
        try:
            loop.call_soon_threadsafe(self._wakeup.set)
        except RuntimeError:
            # 接收端事件循环已关闭
            logger.debug(f"[{self.name}] 接收端已停止，跳过唤醒")

    # ===== 接收端 =====

    def _bind(self):
        loop = asyncio.get_running_loop()
        with self._lock:
            if self._loop is None:
                self._loop = loop
                self._wakeup = asyncio.Event()
            elif self._loop is not loop:
                raise RuntimeError(f"通道 {self.name} 已绑定到其他事件循环")

    def receive_nowait(self) -> Optional[ChannelMessage]:
        with self._lock:
            if not self._buffer:
                return None
            frame = self._buffer.popleft()
        return self._decode(frame)

    def drain(self) -> list:
        """取出所有已缓冲消息"""
        messages = []
        while True:
            message = self.receive_nowait()
            if message is None:
                return messages
            messages.append(message)

    async def receive(self) -> ChannelMessage:
        """等待下一条消息；通道关闭且为空时抛出 ChannelClosedError"""
        self._bind()

        while True:
            with self._lock:
                if self._buffer:
                    frame = self._buffer.popleft()
                    break
                if self._closed:
                    raise ChannelClosedError(f"通道已关闭: {self.name}")
                self._wakeup.clear()
            await self._wakeup.wait()

        return self._decode(frame)

    async def listen(self, handler: MessageHandler):
        """持续接收并分发，直到通道关闭"""
        while True:
            try:
                message = await self.receive()
            except ChannelClosedError:
                logger.debug(f"[{self.name}] 通道关闭，停止监听")
                return

            try:
                result = handler(message)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(f"[{self.name}] 消息处理失败 ({message.kind}): {e}", exc_info=True)

    @staticmethod
    def _decode(frame: str) -> ChannelMessage:
        data = json.loads(frame)
        return ChannelMessage(kind=data["kind"], payload=data.get("payload") or {})

"""测试用的假页面、假定位器和假会话宿主"""

import asyncio
import itertools
import threading
import time
import uuid
from typing import Callable, List, Optional, Tuple

from browser_core import SessionConfig, SessionHandle, SessionHost, SessionUnavailableError
from channels import MessageChannel
from element_locator import ElementLocator
from page_observer import ObserverRuntime, ObserverSettings, PageObserver


class FakeElement:
    def __init__(self, name: str, on_click: Callable[[], None] = None):
        self.name = name
        self.value = ""
        self.clicks = 0
        self._on_click = on_click

    def clear(self):
        self.value = ""

    def input(self, text: str):
        self.value += text

    def click(self):
        self.clicks += 1
        if self._on_click is not None:
            self._on_click()


class FakePage:
    """
    可编排的聊天页面

    script(elapsed) -> (answer, generating)，elapsed 为距离最近一次点击发送的时间。
    没有 script 时直接使用 answer / generating 属性。
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic,
                 script: Callable[[float], Tuple[str, bool]] = None):
        self.clock = clock
        self.script = script
        self.has_input = True
        self.has_send = True
        self.answer = ""
        self.answer_nodes = 0
        self.generating = False
        self.sent_at: Optional[float] = None
        self.sent_prompts: List[str] = []
        self.stop_clicks = 0
        self.input_box = FakeElement("input")
        self.send_button = FakeElement("send", on_click=self._on_send)
        self.stop_button = FakeElement("stop", on_click=self._on_stop)

    def _on_send(self):
        self.sent_prompts.append(self.input_box.value)
        self.sent_at = self.clock()

    def _on_stop(self):
        self.stop_clicks += 1
        self.generating = False

    def state(self) -> Tuple[str, bool]:
        if self.script is not None and self.sent_at is not None:
            return self.script(self.clock() - self.sent_at)
        return self.answer, self.generating


class FakeLocator(ElementLocator):
    def __init__(self, page: FakePage):
        self.page = page
        self.read_error: Optional[Exception] = None
        self.answer_reads = 0

    def find_input(self):
        return self.page.input_box if self.page.has_input else None

    def find_send_control(self):
        return self.page.send_button if self.page.has_send else None

    def find_stop_control(self):
        return self.page.stop_button if self.page.state()[1] else None

    def find_latest_answer_text(self) -> str:
        self.answer_reads += 1
        if self.read_error is not None:
            raise self.read_error
        return self.page.state()[0]

    def count_answers(self) -> int:
        return self.page.answer_nodes


def echo_script(elapsed: float, prompt: str) -> Tuple[str, bool]:
    """先空白，再输出 "Echo:"，最后稳定为 "Echo: <prompt>" """
    if elapsed < 0.03:
        return "", True
    if elapsed < 0.06:
        return "Echo:", True
    return f"Echo: {prompt}", False


FAST_SETTINGS = ObserverSettings(
    input_timeout=1.0,
    input_check_interval=0.01,
    poll_interval=0.01,
    quiet_period=0.05,
    max_duration=5.0,
    skip_stale_answer=True,
)


class FakeSessionHost(SessionHost):
    """记录调用的宿主；不运行观察器，测试直接读写会话通道"""

    def __init__(self, auto_ready: bool = True, fail_create: bool = False,
                 fail_load: bool = False, create_delay: float = 0.0):
        super().__init__()
        self.auto_ready = auto_ready
        self.fail_create = fail_create
        self.fail_load = fail_load
        self.create_delay = create_delay
        self.create_calls = 0
        self.load_calls = 0
        self.closed: List[SessionHandle] = []
        self.sessions: List[Tuple[SessionHandle, SessionConfig]] = []
        self._lock = threading.Lock()

    def create_session(self, config: SessionConfig) -> SessionHandle:
        with self._lock:
            self.create_calls += 1
        if self.create_delay:
            time.sleep(self.create_delay)
        if self.fail_create:
            raise RuntimeError("browser failed to start")

        handle = SessionHandle(session_id=uuid.uuid4().hex)
        self.sessions.append((handle, config))
        return handle

    def load_target_page(self, handle: SessionHandle, url: str):
        self.load_calls += 1
        if self.fail_load:
            self._emit(self.SIGNAL_LOAD_FAILED, handle, "net::ERR_NAME_NOT_RESOLVED")
            raise SessionUnavailableError("load failed")

        handle.url = url
        self._emit(self.SIGNAL_LOADED, handle)
        if self.auto_ready:
            self.upstream.send("ready", {"session_id": handle.session_id})

    def close_session(self, handle: SessionHandle):
        if handle.closed:
            return
        handle.closed = True
        self.closed.append(handle)
        self._emit(self.SIGNAL_CLOSED, handle)

    @property
    def handle(self) -> SessionHandle:
        return self.sessions[-1][0]

    @property
    def downstream(self) -> MessageChannel:
        return self.sessions[-1][1].downstream

    @property
    def upstream(self) -> MessageChannel:
        return self.sessions[-1][1].upstream


class ThreadedFakeHost(SessionHost):
    """在真实的 ObserverRuntime 线程里运行 PageObserver + FakePage"""

    def __init__(self, settings: ObserverSettings = FAST_SETTINGS):
        super().__init__()
        self.settings = settings
        self.pages: List[FakePage] = []
        self.create_calls = 0

    def create_session(self, config: SessionConfig) -> SessionHandle:
        self.create_calls += 1
        page = FakePage()
        page.script = lambda elapsed: echo_script(elapsed, page.sent_prompts[-1])
        self.pages.append(page)
        handle = SessionHandle(session_id=uuid.uuid4().hex, page=page)

        def factory(scheduler):
            return PageObserver(FakeLocator(page), config.upstream, scheduler,
                                session_id=handle.session_id, settings=self.settings)

        handle.runtime = ObserverRuntime(factory, config.downstream, name="test-observer")
        handle.runtime.start()
        return handle

    def load_target_page(self, handle: SessionHandle, url: str):
        handle.url = url
        self._emit(self.SIGNAL_LOADED, handle)
        handle.runtime.notify_loaded()

    def close_session(self, handle: SessionHandle):
        if handle.closed:
            return
        handle.closed = True
        handle.runtime.stop()
        self._emit(self.SIGNAL_CLOSED, handle)

    @property
    def page(self) -> FakePage:
        return self.pages[-1]


class FakeEndpoint:
    """WebModelClient 使用的代理端点替身"""

    def __init__(self, ready: bool = True, init_error: Exception = None,
                 send_error: Exception = None):
        self.events = MessageChannel("test:stream")
        self.ready = ready
        self.init_error = init_error
        self.send_error = send_error
        self.init_calls = 0
        self.sent: List[Tuple[str, str, Optional[str]]] = []
        self.cancelled: List[str] = []
        self._ids = itertools.count(1)

    async def initialize(self) -> bool:
        self.init_calls += 1
        await asyncio.sleep(0.01)
        if self.init_error is not None:
            raise self.init_error
        return self.ready

    async def send_message(self, prompt: str, provider: str = None) -> str:
        if self.send_error is not None:
            raise self.send_error
        request_id = f"req-{next(self._ids)}"
        self.sent.append((request_id, prompt, provider))
        return request_id

    def cancel(self, request_id: str):
        self.cancelled.append(request_id)

    def close(self):
        self.events.close()


async def settle(seconds: float = 0.05):
    """让跨任务、跨线程的消息投递完成"""
    await asyncio.sleep(seconds)

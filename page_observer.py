"""
page_observer.py - 页面观察器（运行在页面上下文）

职责：
- 接收下行 submit/cancel 命令
- 把提示词写入输入框并点击发送
- 按固定节奏采样最新回答，输出 chunk / done / error 事件

单请求状态机：
    SUBMITTING -> POLLING -> DONE
    SUBMITTING / POLLING -> ERRORED

完成判定（防抖）：
- 已输出过至少一个 chunk
- 距离最后一次内容变化超过静默期
- 生成中指示器（停止按钮）不存在
停止按钮可能短暂闪烁，单独依赖它不可靠，所以必须叠加静默期。
"""

import asyncio
import json
import threading
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, List, Optional

from pydantic import ValidationError

from browser_core import ConfigurationError, ElementNotFoundError, RequestTimeoutError, SecureLogger
from channels import ChannelClosedError, ChannelMessage, MessageChannel
from data_models import CancelCommand, ReadySignal, SubmitCommand, WebModelEvent
from element_locator import ElementLocator
from scheduler import LoopPollScheduler, PollHandle, PollScheduler


logger = SecureLogger('observer')


# ================= 常量配置 =================

class ObserverConstants:
    """观察器常量（可被 observer_config.json 覆盖）"""

    _config = None
    _config_file = Path("observer_config.json")

    _DEFAULTS = {
        'INPUT_WAIT_TIMEOUT': 15.0,
        'INPUT_CHECK_INTERVAL': 0.2,
        'POLL_INTERVAL': 0.4,
        'QUIET_PERIOD': 1.5,
        'MAX_REQUEST_DURATION': 600.0,
        'SKIP_STALE_ANSWER': True,
    }

    @classmethod
    def _load_config(cls):
        """从文件加载配置，缺省或损坏时使用默认值"""
        cls._config = cls._DEFAULTS.copy()

        if not cls._config_file.exists():
            return

        try:
            with open(cls._config_file, 'r', encoding='utf-8') as f:
                overrides = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"观察器配置读取失败，使用默认值: {e}")
            return

        if isinstance(overrides, dict):
            cls._config.update(overrides)

    @classmethod
    def get_defaults(cls):
        return cls._DEFAULTS.copy()

    @classmethod
    def get_all(cls) -> dict:
        if cls._config is None:
            cls._load_config()
        return dict(cls._config)

    @classmethod
    def save(cls, overrides: dict) -> dict:
        """只保存已知键，校验通过后写入并立即重载"""
        known = {k: v for k, v in overrides.items() if k in cls._DEFAULTS}
        ignored = set(overrides) - set(known)
        if ignored:
            logger.warning(f"忽略未知的观察器常量: {sorted(ignored)}")

        ObserverSettings.from_mapping({**cls._DEFAULTS, **known})

        with open(cls._config_file, 'w', encoding='utf-8') as f:
            json.dump(known, f, indent=2, ensure_ascii=False)

        cls.reload()
        return cls.get_all()

    @classmethod
    def reload(cls):
        cls._config = None
        cls._load_config()


@dataclass
class ObserverSettings:
    input_timeout: float = 15.0
    input_check_interval: float = 0.2
    poll_interval: float = 0.4
    quiet_period: float = 1.5
    # 0 或 None 表示不限制
    max_duration: Optional[float] = 600.0
    skip_stale_answer: bool = True

    @classmethod
    def from_mapping(cls, values: dict) -> 'ObserverSettings':
        try:
            max_duration = values.get('MAX_REQUEST_DURATION')
            settings = cls(
                input_timeout=float(values['INPUT_WAIT_TIMEOUT']),
                input_check_interval=float(values['INPUT_CHECK_INTERVAL']),
                poll_interval=float(values['POLL_INTERVAL']),
                quiet_period=float(values['QUIET_PERIOD']),
                max_duration=float(max_duration) if max_duration else None,
                skip_stale_answer=bool(values['SKIP_STALE_ANSWER']),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise ConfigurationError(f"观察器常量无效: {e}") from e

        if settings.poll_interval <= 0 or settings.input_check_interval <= 0:
            raise ConfigurationError("轮询间隔必须大于 0")
        return settings

    @classmethod
    def from_constants(cls) -> 'ObserverSettings':
        return cls.from_mapping({**ObserverConstants.get_defaults(), **ObserverConstants.get_all()})


# ================= 请求状态 =================

class RequestPhase(Enum):
    SUBMITTING = "submitting"
    POLLING = "polling"
    DONE = "done"
    ERRORED = "errored"


@dataclass
class RequestState:
    request_id: str
    prompt: str
    started_at: float
    provider: Optional[str] = None
    phase: RequestPhase = RequestPhase.SUBMITTING
    last_content: str = ""
    last_emit_time: Optional[float] = None
    done: bool = False
    poll_handle: Optional[PollHandle] = None
    # 发送前页面上已有的回答及回答节点数，新节点出现前相同文本不视为输出
    stale_content: Optional[str] = None
    answer_baseline: int = 0
    chunks_emitted: int = field(default=0)

    @property
    def short_id(self) -> str:
        return self.request_id[:8]


# ================= 页面观察器 =================

class PageObserver:
    """页面观察器"""

    def __init__(self, locator: ElementLocator, upstream: MessageChannel,
                 scheduler: PollScheduler, session_id: str = "",
                 settings: ObserverSettings = None):
        self.locator = locator
        self.upstream = upstream
        self.scheduler = scheduler
        self.session_id = session_id
        self.settings = settings or ObserverSettings.from_constants()
        self._requests: Dict[str, RequestState] = {}

    @property
    def active_requests(self) -> List[str]:
        return list(self._requests)

    def get_state(self, request_id: str) -> Optional[RequestState]:
        return self._requests.get(request_id)

    # ===== 通道 =====

    def _emit(self, kind: str, payload: dict):
        try:
            self.upstream.send(kind, payload)
        except ChannelClosedError:
            logger.warning(f"上行通道已关闭，丢弃 {kind} 事件")

    def announce_ready(self):
        logger.info(f"页面已就绪 (session={self.session_id[:8]})")
        self._emit("ready", ReadySignal(session_id=self.session_id).model_dump())

    def handle_command(self, message: ChannelMessage):
        """下行命令分发"""
        try:
            if message.kind == "submit":
                command = SubmitCommand(**message.payload)
                self.submit(command.request_id, command.prompt, command.provider)
            elif message.kind == "cancel":
                command = CancelCommand(**message.payload)
                self.cancel(command.request_id)
            else:
                logger.warning(f"未知命令: {message.kind}")
        except ValidationError as e:
            logger.warning(f"命令格式错误 ({message.kind}): {e}")

    # ===== 生命周期 =====

    def submit(self, request_id: str, prompt: str, provider: str = None):
        if request_id in self._requests:
            logger.warning(f"[{request_id[:8]}] 请求已在处理中，忽略重复提交")
            return

        state = RequestState(
            request_id=request_id,
            prompt=prompt,
            provider=provider,
            started_at=self.scheduler.now(),
        )
        self._requests[request_id] = state
        logger.info_sensitive(f"[{state.short_id}] 提交提示词 (provider={provider or 'default'})", prompt)

        # 先立即检查一次，找不到输入框再进入等待
        self._run_step(request_id, self._try_submit)

        if state.phase is RequestPhase.SUBMITTING and request_id in self._requests:
            logger.debug(f"[{state.short_id}] 等待输入框出现")
            state.poll_handle = self.scheduler.call_every(
                self.settings.input_check_interval,
                lambda: self._run_step(request_id, self._try_submit)
            )

    def cancel(self, request_id: str):
        state = self._requests.get(request_id)
        if state is None:
            logger.debug(f"[{request_id[:8]}] 取消的请求不存在")
            return

        logger.info(f"[{state.short_id}] 取消请求 (phase={state.phase.value})")

        try:
            stop_button = self.locator.find_stop_control()
            if stop_button is not None:
                stop_button.click()
        except Exception as e:
            logger.warning(f"[{state.short_id}] 点击停止按钮失败: {e}")

        self._cleanup(request_id)

    def shutdown(self):
        """页面卸载：释放全部请求，不发送事件"""
        if self._requests:
            logger.info(f"页面卸载，释放 {len(self._requests)} 个请求")
        for request_id in list(self._requests):
            self._cleanup(request_id)

    # ===== 状态机 =====

    def _run_step(self, request_id: str, step: Callable[[RequestState], None]):
        state = self._requests.get(request_id)
        if state is None or state.done:
            return
        try:
            step(state)
        except Exception as e:
            self._fail(state, e)

    def _try_submit(self, state: RequestState):
        now = self.scheduler.now()
        input_box = self.locator.find_input()

        if input_box is None:
            if now - state.started_at > self.settings.input_timeout:
                raise ElementNotFoundError("等待输入框超时")
            return

        self._cancel_timer(state)

        if self.settings.skip_stale_answer:
            state.stale_content = self.locator.find_latest_answer_text() or None
            if state.stale_content is not None:
                state.answer_baseline = self.locator.count_answers()

        self._write_prompt(input_box, state.prompt)

        send_button = self.locator.find_send_control()
        if send_button is None:
            raise ElementNotFoundError("找不到发送按钮，请确认已登录")
        send_button.click()

        state.phase = RequestPhase.POLLING
        state.poll_handle = self.scheduler.call_every(
            self.settings.poll_interval,
            lambda: self._run_step(state.request_id, self._tick)
        )
        logger.debug(f"[{state.short_id}] 已发送，开始轮询")

    def _write_prompt(self, input_box, prompt: str):
        try:
            input_box.clear()
        except Exception:
            pass
        input_box.input(prompt)

    def _tick(self, state: RequestState):
        now = self.scheduler.now()
        max_duration = self.settings.max_duration

        if max_duration and now - state.started_at > max_duration:
            raise RequestTimeoutError(f"请求超过最大时长 {max_duration:g}s")

        content = self.locator.find_latest_answer_text() or ""

        if content and state.stale_content is not None:
            if content != state.stale_content or self._new_answer_node(state):
                state.stale_content = None
            else:
                content = ""

        if content and content != state.last_content:
            state.last_content = content
            state.last_emit_time = now
            state.chunks_emitted += 1
            self._emit("chunk", WebModelEvent(
                request_id=state.request_id, content=content, done=False
            ).model_dump())

        if state.last_emit_time is None:
            return

        if now - state.last_emit_time <= self.settings.quiet_period:
            return

        if self.locator.find_stop_control() is not None:
            return

        self._complete(state)

    def _new_answer_node(self, state: RequestState) -> bool:
        count = self.locator.count_answers()
        if count > state.answer_baseline:
            logger.debug(f"[{state.short_id}] 新回答节点出现 ({state.answer_baseline} -> {count})")
            return True
        return False

    def _complete(self, state: RequestState):
        state.done = True
        state.phase = RequestPhase.DONE
        self._cleanup(state.request_id)

        logger.info_sensitive(f"[{state.short_id}] 回答完成 (chunks={state.chunks_emitted})", state.last_content)
        self._emit("chunk", WebModelEvent(
            request_id=state.request_id, content=state.last_content, done=True
        ).model_dump())

    def _fail(self, state: RequestState, error: Exception):
        state.phase = RequestPhase.ERRORED
        self._cleanup(state.request_id)

        message = str(error) or error.__class__.__name__
        logger.error(f"[{state.short_id}] 请求失败: {message}")
        self._emit("error", WebModelEvent(
            request_id=state.request_id, error=message, done=True
        ).model_dump())

    def _cancel_timer(self, state: RequestState):
        if state.poll_handle is not None:
            state.poll_handle.cancel()
            state.poll_handle = None

    def _cleanup(self, request_id: str):
        state = self._requests.pop(request_id, None)
        if state is not None:
            self._cancel_timer(state)


# ================= 页面上下文运行时 =================

class ObserverRuntime:
    """
    在独立线程 + 独立事件循环中运行观察器

    与协调端只通过下行/上行通道交互。
    """

    def __init__(self, observer_factory: Callable[[PollScheduler], PageObserver],
                 downstream: MessageChannel, name: str = "page-observer"):
        self._factory = observer_factory
        self._downstream = downstream
        self.name = name
        self.observer: Optional[PageObserver] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._thread: Optional[threading.Thread] = None
        self._started = threading.Event()

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self, timeout: float = 10) -> bool:
        """启动线程，返回观察器是否已在运行"""
        self._thread = threading.Thread(target=self._run_loop, name=self.name, daemon=True)
        self._thread.start()
        self._started.wait(timeout)
        return self.observer is not None and self.is_running

    def _run_loop(self):
        loop = asyncio.new_event_loop()
        asyncio.set_event_loop(loop)
        self._loop = loop

        try:
            try:
                self.observer = self._factory(LoopPollScheduler(loop))
            except Exception as e:
                logger.error(f"[{self.name}] 观察器创建失败: {e}")
                return
            self._started.set()
            loop.run_until_complete(self._downstream.listen(self.observer.handle_command))
        finally:
            if self.observer is not None:
                self.observer.shutdown()
            self._started.set()
            loop.close()
            logger.debug(f"[{self.name}] 页面上下文已退出")

    def notify_loaded(self):
        """宿主通知页面加载完成，由观察器自己上报 ready"""
        if self._loop is None or self.observer is None:
            logger.warning(f"[{self.name}] 运行时未启动，无法上报就绪")
            return
        try:
            self._loop.call_soon_threadsafe(self.observer.announce_ready)
        except RuntimeError:
            logger.warning(f"[{self.name}] 页面上下文已停止")

    def stop(self, timeout: float = 5):
        self._downstream.close()
        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join(timeout)
            if self._thread.is_alive():
                logger.warning(f"[{self.name}] 页面上下文未能及时退出")

"""
browser_core.py - 浏览器会话核心模块

职责：
- 异常定义与安全日志
- 会话宿主：创建/加载/探活/关闭自动化浏览器会话，并向订阅者广播生命周期信号
- 在会话的页面上下文中挂载页面观察器（ObserverRuntime）
- SSE 格式化与消息验证（供 HTTP 层使用）
"""

import json
import logging
import os
import threading
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from DrissionPage import ChromiumOptions, ChromiumPage


# ================= 安全日志配置 =================

class SecureLogger:
    """安全日志封装器"""

    LOG_SENSITIVE = os.environ.get('BROWSER_LOG_SENSITIVE', 'false').lower() == 'true'

    def __init__(self, name: str, level: int = logging.INFO):
        self._logger = self._setup_logger(name, level)

    def _setup_logger(self, name: str, level: int) -> logging.Logger:
        logger = logging.getLogger(name)
        if not logger.handlers:
            handler = logging.StreamHandler()
            formatter = logging.Formatter(
                '[%(asctime)s] %(levelname)s %(message)s',
                datefmt='%H:%M:%S'
            )
            handler.setFormatter(formatter)
            logger.addHandler(handler)
        logger.setLevel(level)
        return logger

    def info(self, msg: str, *args, **kwargs):
        self._logger.info(msg, *args, **kwargs)

    def debug(self, msg: str, *args, **kwargs):
        self._logger.debug(msg, *args, **kwargs)

    def warning(self, msg: str, *args, **kwargs):
        self._logger.warning(msg, *args, **kwargs)

    def error(self, msg: str, *args, **kwargs):
        self._logger.error(msg, *args, **kwargs)

    def info_sensitive(self, msg: str, content: str = None,
                       max_preview: int = 50, *args, **kwargs):
        """记录可能含用户内容的日志，默认只输出长度"""
        if content is None:
            self._logger.info(msg, *args, **kwargs)
            return

        if self.LOG_SENSITIVE:
            preview = content[:max_preview] + "..." if len(content) > max_preview else content
            self._logger.info(f"{msg} | preview='{preview}'", *args, **kwargs)
        else:
            self._logger.info(f"{msg} | len={len(content)}", *args, **kwargs)


logger = SecureLogger('browser')


# ================= 异常定义 =================

class BrowserError(Exception):
    """浏览器相关错误基类"""
    pass


class ElementNotFoundError(BrowserError):
    """元素未找到错误（仅对单个请求致命）"""
    pass


class SessionUnavailableError(BrowserError):
    """会话不可用（无法创建或已丢失）"""
    pass


class RequestTimeoutError(BrowserError):
    """单个请求超过最大时长"""
    pass


class WebModelError(BrowserError):
    """页面侧上报的请求错误"""
    pass


class ConfigurationError(BrowserError):
    """配置错误"""
    pass


# ================= 会话 =================

@dataclass
class SessionConfig:
    """创建会话所需的配置"""
    url: str
    downstream: Any
    upstream: Any
    width: int = 1280
    height: int = 800


@dataclass
class SessionHandle:
    session_id: str
    page: Any = None
    tab: Any = None
    runtime: Any = None
    url: Optional[str] = None
    closed: bool = False
    created_at: float = field(default_factory=time.time)


SessionListener = Callable[[str, SessionHandle, Optional[str]], None]


class SessionHost:
    """
    会话宿主接口

    生命周期信号：loaded / closed / load_failed，监听器签名为
    listener(signal, handle, detail)，可能在任意线程被调用。
    """

    SIGNAL_LOADED = "loaded"
    SIGNAL_CLOSED = "closed"
    SIGNAL_LOAD_FAILED = "load_failed"

    def __init__(self):
        self._listeners: List[SessionListener] = []
        self._listeners_lock = threading.Lock()

    def subscribe(self, listener: SessionListener) -> Callable[[], None]:
        with self._listeners_lock:
            self._listeners.append(listener)

        def unsubscribe():
            with self._listeners_lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def _emit(self, signal: str, handle: SessionHandle, detail: str = None):
        with self._listeners_lock:
            listeners = list(self._listeners)

        for listener in listeners:
            try:
                listener(signal, handle, detail)
            except Exception as e:
                logger.error(f"会话信号监听器异常 [{signal}]: {e}")

    def create_session(self, config: SessionConfig) -> SessionHandle:
        raise NotImplementedError

    def load_target_page(self, handle: SessionHandle, url: str):
        raise NotImplementedError

    def is_alive(self, handle: SessionHandle) -> bool:
        return not handle.closed

    def close_session(self, handle: SessionHandle):
        raise NotImplementedError


class DrissionSessionHost(SessionHost):
    """基于 DrissionPage 的会话宿主"""

    def __init__(self, port: int = 9222, headless: bool = False,
                 user_data_dir: str = None, selectors=None,
                 observer_settings=None, load_timeout: float = 30):
        super().__init__()
        self.port = port
        self.headless = headless
        self.user_data_dir = user_data_dir
        self.selectors = selectors
        self.observer_settings = observer_settings
        self.load_timeout = load_timeout

    def _build_options(self, config: SessionConfig) -> ChromiumOptions:
        options = ChromiumOptions()
        options.set_local_port(self.port)
        options.set_argument('--window-size', f'{config.width},{config.height}')
        if self.headless:
            options.headless(True)
        if self.user_data_dir:
            # 持久化用户目录，登录态跨会话保留
            options.set_user_data_path(self.user_data_dir)
        return options

    def create_session(self, config: SessionConfig) -> SessionHandle:
        from element_locator import DrissionElementLocator
        from page_observer import ObserverRuntime, PageObserver

        logger.info(f"启动浏览器 127.0.0.1:{self.port} (headless={self.headless})")

        try:
            page = ChromiumPage(addr_or_opts=self._build_options(config))
            tab = page.latest_tab
        except Exception as e:
            logger.error(f"浏览器启动失败: {e}")
            raise SessionUnavailableError(f"无法连接到浏览器 (端口: {self.port}): {e}") from e

        handle = SessionHandle(session_id=uuid.uuid4().hex, page=page, tab=tab)
        locator = DrissionElementLocator(tab, self.selectors)

        def observer_factory(scheduler):
            return PageObserver(
                locator,
                config.upstream,
                scheduler,
                session_id=handle.session_id,
                settings=self.observer_settings,
            )

        handle.runtime = ObserverRuntime(
            observer_factory,
            config.downstream,
            name=f"page-observer-{handle.session_id[:8]}",
        )
        if not handle.runtime.start():
            logger.error(f"页面观察器启动失败: {handle.session_id}")
            self.close_session(handle)
            raise SessionUnavailableError("页面观察器启动失败")

        logger.info(f"会话已创建: {handle.session_id}")
        return handle

    def load_target_page(self, handle: SessionHandle, url: str):
        logger.info(f"加载目标页面: {url}")

        detail = None
        try:
            loaded = handle.tab.get(url, timeout=self.load_timeout)
        except Exception as e:
            loaded = False
            detail = str(e)

        if not loaded:
            detail = detail or "页面加载失败"
            logger.error(f"目标页面加载失败: {detail}")
            self._emit(self.SIGNAL_LOAD_FAILED, handle, detail)
            raise SessionUnavailableError(f"无法加载页面 {url}: {detail}")

        handle.url = url
        logger.info("目标页面已加载")
        self._emit(self.SIGNAL_LOADED, handle)
        handle.runtime.notify_loaded()

    def is_alive(self, handle: SessionHandle) -> bool:
        if handle.closed:
            return False
        try:
            _ = handle.page.latest_tab
            _ = handle.tab.url
            return True
        except Exception as e:
            logger.debug(f"会话探活失败: {e}")
            return False

    def close_session(self, handle: SessionHandle):
        if handle.closed:
            return
        handle.closed = True

        logger.info(f"关闭会话: {handle.session_id}")

        if handle.runtime is not None:
            handle.runtime.stop()

        try:
            handle.page.quit()
        except Exception as e:
            logger.debug(f"关闭浏览器: {e}")

        self._emit(self.SIGNAL_CLOSED, handle)


# ================= SSE 格式化器 =================

class SSEFormatter:
    """SSE 响应格式化器（OpenAI 兼容）"""

    _sequence = 0
    _sequence_lock = threading.Lock()

    @classmethod
    def _generate_id(cls) -> str:
        timestamp = int(time.time() * 1000)
        with cls._sequence_lock:
            cls._sequence += 1
            seq = cls._sequence
        return f"chatcmpl-{timestamp}-{seq}-{uuid.uuid4().hex[:6]}"

    @classmethod
    def pack_chunk(cls, content: str, model: str = "web-model") -> str:
        data = {
            "id": cls._generate_id(),
            "object": "chat.completion.chunk",
            "created": int(time.time()),
            "model": model,
            "choices": [{
                "index": 0,
                "delta": {"content": content},
                "finish_reason": None
            }]
        }
        return f"data: {json.dumps(data, ensure_ascii=False)}\n\n"

    @classmethod
    def pack_finish(cls, model: str = "web-model") -> str:
        data = {
            "id": cls._generate_id(),
            "object": "chat.completion.chunk",
            "created": int(time.time()),
            "model": model,
            "choices": [{
                "index": 0,
                "delta": {},
                "finish_reason": "stop"
            }]
        }
        return f"data: {json.dumps(data, ensure_ascii=False)}\n\ndata: [DONE]\n\n"

    @staticmethod
    def pack_error_json(message: str, error_type: str = "execution_error",
                        code: str = "request_failed") -> Dict:
        return {
            "error": {
                "message": message,
                "type": error_type,
                "code": code
            }
        }

    @classmethod
    def pack_error(cls, message: str, error_type: str = "execution_error",
                   code: str = "request_failed") -> str:
        data = cls.pack_error_json(message, error_type, code)
        return f"data: {json.dumps(data, ensure_ascii=False)}\n\n"

    @classmethod
    def pack_non_stream(cls, content: str, model: str = "web-model") -> Dict:
        return {
            "id": cls._generate_id(),
            "object": "chat.completion",
            "created": int(time.time()),
            "model": model,
            "choices": [{
                "index": 0,
                "message": {
                    "role": "assistant",
                    "content": content
                },
                "finish_reason": "stop"
            }],
            "usage": {
                "prompt_tokens": 0,
                "completion_tokens": 0,
                "total_tokens": 0
            }
        }


# ================= 快照增量 =================

class StreamContext:
    """把页面全文快照转换成增量（已发送部分不会撤回）"""

    SHRINK_TOLERANCE = 3

    def __init__(self):
        self.sent_text = ""

    def calculate_diff(self, current_text: str) -> tuple:
        """返回 (diff, warning)"""
        if not current_text:
            return "", None

        sent_length = len(self.sent_text)

        if len(current_text) > sent_length:
            warning = None
            if not current_text.startswith(self.sent_text):
                warning = "页面内容被改写，仅追加新增部分"
            return current_text[sent_length:], warning

        shrink_amount = sent_length - len(current_text)
        if shrink_amount > self.SHRINK_TOLERANCE:
            return "", f"内容缩短 {shrink_amount} 字符"

        return "", None

    def update_after_send(self, current_text: str):
        if len(current_text) > len(self.sent_text):
            self.sent_text = current_text


# ================= 消息验证器 =================

class MessageValidator:
    """消息验证器"""

    VALID_ROLES = {'user', 'assistant', 'system'}
    MAX_MESSAGE_LENGTH = 100000
    MAX_MESSAGES_COUNT = 100

    @classmethod
    def validate(cls, messages: Any) -> tuple:
        """返回 (is_valid, error, sanitized)"""
        if not messages:
            return False, "messages 不能为空", None

        if not isinstance(messages, list):
            return False, "messages 应该是列表", None

        if len(messages) > cls.MAX_MESSAGES_COUNT:
            return False, "消息数量超过限制", None

        sanitized = []
        for i, msg in enumerate(messages):
            if hasattr(msg, 'model_dump'):
                msg = msg.model_dump()
            if not isinstance(msg, dict):
                return False, f"messages[{i}] 不是字典类型", None

            role = msg.get('role', 'user')
            if role not in cls.VALID_ROLES:
                role = 'user'

            content = msg.get('content', '')
            if not isinstance(content, str):
                content = str(content) if content is not None else ''

            if len(content) > cls.MAX_MESSAGE_LENGTH:
                return False, f"messages[{i}].content 超过长度限制", None

            sanitized.append({'role': role, 'content': content})

        return True, None, sanitized

    @staticmethod
    def build_prompt(messages: List[Dict[str, str]]) -> str:
        """单条消息直接发送原文，多条消息按角色拼接"""
        if len(messages) == 1:
            return messages[0]['content']
        return "\n\n".join(f"{m['role']}: {m['content']}" for m in messages)

"""
main.py - FastAPI 主入口

职责：
- HTTP 服务启动
- 路由定义
- 中间件配置
- 通过 WebModelClient 把网页模型输出转换为 OpenAI 兼容接口
"""

import asyncio
import logging
import os
import threading
import time
from collections import deque
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response, StreamingResponse
from pydantic import BaseModel, Field

from browser_core import (
    ConfigurationError,
    DrissionSessionHost,
    MessageValidator,
    SessionHost,
    SessionUnavailableError,
    SSEFormatter,
    StreamContext,
    WebModelError,
)
from config_engine import ConfigConstants, domain_of, get_config_engine
from data_models import (
    ChatCompletionRequest,
    HealthCheckResult,
    ModelInfo,
    ModelsResponse,
    SelectorProbeRequest,
    SiteSelectors,
)
from element_locator import SnapshotLocator
from page_observer import ObserverConstants, ObserverSettings
from web_model_client import WebModelClient
from web_model_service import DEFAULT_TARGET_URL, BrokerSettings, WebModelService


VERSION = "1.0.0"
MODEL_ID = "web-model"


# ================= 环境变量配置 =================

class AppConfig:
    """应用配置"""
    HOST = os.getenv("APP_HOST", "127.0.0.1")
    PORT = int(os.getenv("APP_PORT", "8199"))
    DEBUG = os.getenv("APP_DEBUG", "false").lower() == "true"

    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "*").split(",")
    CORS_ENABLED = os.getenv("CORS_ENABLED", "true").lower() == "true"

    AUTH_ENABLED = os.getenv("AUTH_ENABLED", "false").lower() == "true"
    AUTH_TOKEN = os.getenv("AUTH_TOKEN", "")

    BROWSER_PORT = int(os.getenv("BROWSER_PORT", "9222"))
    BROWSER_HEADLESS = os.getenv("BROWSER_HEADLESS", "false").lower() == "true"
    BROWSER_USER_DATA_DIR = os.getenv("BROWSER_USER_DATA_DIR", "") or None
    WEB_MODEL_URL = os.getenv("WEB_MODEL_URL", DEFAULT_TARGET_URL)

    REQUEST_TIMEOUT = float(os.getenv("REQUEST_TIMEOUT", "600"))
    READY_TIMEOUT = float(os.getenv("READY_TIMEOUT", "10"))
    HEALTH_CHECK_INTERVAL = float(os.getenv("HEALTH_CHECK_INTERVAL", "5"))
    FAIL_PENDING_ON_SESSION_LOSS = os.getenv("FAIL_PENDING_ON_SESSION_LOSS", "true").lower() == "true"

    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()


# ================= 日志配置 =================

logging.basicConfig(
    level=getattr(logging, AppConfig.LOG_LEVEL, logging.INFO),
    format='[%(asctime)s] %(levelname)s [%(name)s] %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S'
)

logger = logging.getLogger('main')


# ================= 日志收集器 =================

class LogCollector:
    """收集最近的日志供 /api/logs 查询"""

    def __init__(self, max_logs=500):
        self.logs = deque(maxlen=max_logs)
        self.lock = threading.Lock()

    def add(self, level: str, message: str):
        with self.lock:
            self.logs.append({
                "timestamp": time.time(),
                "level": level,
                "message": message
            })

    def get_recent(self, since: float = 0):
        with self.lock:
            return [log for log in self.logs if log["timestamp"] > since]

    def clear(self):
        with self.lock:
            self.logs.clear()


log_collector = LogCollector()


class WebLogHandler(logging.Handler):
    def emit(self, record):
        try:
            log_collector.add(record.levelname, self.format(record))
        except Exception:
            self.handleError(record)


web_handler = WebLogHandler()
web_handler.setLevel(logging.INFO)
logging.getLogger().addHandler(web_handler)


# ================= 请求模型 =================

class ConfigUpdateRequest(BaseModel):
    domain: Optional[str] = Field(default=None)
    selectors: dict = Field(...)


# ================= 应用工厂 =================

def build_default_host() -> SessionHost:
    selectors = get_config_engine().get_site_selectors(domain_of(AppConfig.WEB_MODEL_URL))
    return DrissionSessionHost(
        port=AppConfig.BROWSER_PORT,
        headless=AppConfig.BROWSER_HEADLESS,
        user_data_dir=AppConfig.BROWSER_USER_DATA_DIR,
        selectors=selectors,
        observer_settings=ObserverSettings.from_constants(),
    )


def build_default_settings() -> BrokerSettings:
    return BrokerSettings(
        target_url=AppConfig.WEB_MODEL_URL,
        ready_timeout=AppConfig.READY_TIMEOUT,
        fail_pending_on_session_loss=AppConfig.FAIL_PENDING_ON_SESSION_LOSS,
        health_check_interval=AppConfig.HEALTH_CHECK_INTERVAL,
    )


def create_app(host: SessionHost = None, settings: BrokerSettings = None) -> FastAPI:

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("=" * 60)
        logger.info("Web Model Bridge 服务启动中...")
        logger.info(f"监听地址: http://{AppConfig.HOST}:{AppConfig.PORT}")
        logger.info(f"目标页面: {(settings or build_default_settings()).target_url}")
        logger.info(f"认证: {'启用' if AppConfig.AUTH_ENABLED else '禁用'}")
        logger.info("=" * 60)

        service = WebModelService(host or build_default_host(), settings or build_default_settings())
        await service.start()

        client = WebModelClient(service.connect("http-api"))
        client.attach()

        app.state.service = service
        app.state.client = client

        # 会话延迟创建，首个请求时才启动浏览器
        logger.info("🚀 服务已就绪！")

        yield

        logger.info("服务正在关闭...")
        await client.detach()
        await service.dispose()
        logger.info("👋 服务已停止")

    app = FastAPI(
        title="Web Model Bridge",
        description="把网页聊天界面转换为 OpenAI 兼容的流式接口",
        version=VERSION,
        docs_url="/docs" if AppConfig.DEBUG else None,
        redoc_url="/redoc" if AppConfig.DEBUG else None,
        lifespan=lifespan
    )

    if AppConfig.CORS_ENABLED:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=AppConfig.CORS_ORIGINS,
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    register_routes(app)
    return app


# ================= 认证 =================

async def verify_auth(authorization: Optional[str] = Header(None)) -> bool:
    if not AppConfig.AUTH_ENABLED:
        return True

    if not AppConfig.AUTH_TOKEN:
        raise HTTPException(status_code=500, detail="服务配置错误")

    if not authorization:
        raise HTTPException(
            status_code=401,
            detail="未提供认证令牌",
            headers={"WWW-Authenticate": "Bearer"}
        )

    token = authorization.replace("Bearer ", "").strip()

    if token != AppConfig.AUTH_TOKEN:
        raise HTTPException(
            status_code=401,
            detail="认证令牌无效",
            headers={"WWW-Authenticate": "Bearer"}
        )

    return True


# ================= 流式输出 =================

async def _stream_completion(request: Request, client: WebModelClient,
                             prompt: str, provider: Optional[str], model: str):
    """把全文快照转换为 SSE 增量；客户端断开时取消请求"""
    ctx = StreamContext()
    stream = client.stream(prompt, provider=provider)

    try:
        async for content, done in stream:
            if await request.is_disconnected():
                logger.info("检测到客户端断开")
                break

            diff, warning = ctx.calculate_diff(content)
            if warning:
                logger.debug(f"增量计算: {warning}")
            if diff:
                ctx.update_after_send(content)
                yield SSEFormatter.pack_chunk(diff, model=model)

        yield SSEFormatter.pack_finish(model=model)

    except WebModelError as e:
        yield SSEFormatter.pack_error(f"执行错误: {e}", code="web_model_error")
        yield "data: [DONE]\n\n"

    except SessionUnavailableError as e:
        yield SSEFormatter.pack_error(str(e), error_type="connection_error", code="session_unavailable")
        yield "data: [DONE]\n\n"

    finally:
        await stream.aclose()


# ================= 路由 =================

def register_routes(app: FastAPI):

    @app.post("/v1/chat/completions")
    async def chat_completions(
        request: Request,
        body: ChatCompletionRequest,
        authenticated: bool = Depends(verify_auth)
    ):
        """OpenAI 兼容的聊天补全接口"""
        is_valid, error_msg, messages = MessageValidator.validate(body.messages)
        if not is_valid:
            return JSONResponse(
                status_code=400,
                content=SSEFormatter.pack_error_json(
                    f"无效请求: {error_msg}",
                    error_type="invalid_request_error",
                    code="invalid_messages"
                )
            )

        prompt = MessageValidator.build_prompt(messages)
        client: WebModelClient = request.app.state.client

        if body.stream:
            return StreamingResponse(
                _stream_completion(request, client, prompt, body.provider, body.model),
                media_type="text/event-stream",
                headers={
                    "Cache-Control": "no-cache",
                    "Connection": "keep-alive",
                    "X-Accel-Buffering": "no"
                }
            )

        try:
            content = await client.ask(prompt, provider=body.provider, timeout=AppConfig.REQUEST_TIMEOUT)
        except SessionUnavailableError as e:
            return JSONResponse(
                status_code=503,
                content=SSEFormatter.pack_error_json(str(e), "connection_error", "session_unavailable")
            )
        except WebModelError as e:
            return JSONResponse(
                status_code=500,
                content=SSEFormatter.pack_error_json(f"执行错误: {e}", code="web_model_error")
            )
        except asyncio.TimeoutError:
            return JSONResponse(
                status_code=504,
                content=SSEFormatter.pack_error_json("等待回答超时", code="timeout")
            )

        return JSONResponse(content=SSEFormatter.pack_non_stream(content, model=body.model))

    @app.get("/v1/models")
    async def list_models(authenticated: bool = Depends(verify_auth)):
        response = ModelsResponse(data=[ModelInfo(id=MODEL_ID, created=int(time.time()))])
        return response.model_dump()

    @app.get("/health")
    async def health_check(request: Request):
        status = request.app.state.service.status()

        result = HealthCheckResult(
            service="healthy",
            version=VERSION,
            ready=status["ready"],
            session_id=status["session_id"],
            pending_requests=len(status["pending_requests"]),
            callers=status["callers"],
            timestamp=int(time.time()),
        )

        return JSONResponse(content=result.model_dump(), status_code=200 if result.ready else 503)

    @app.post("/api/initialize")
    async def initialize(request: Request, authenticated: bool = Depends(verify_auth)):
        """预热：创建会话并等待页面就绪"""
        try:
            ready = await request.app.state.client.initialize()
        except SessionUnavailableError as e:
            raise HTTPException(status_code=503, detail=str(e))
        return {"ready": ready}

    # ===== 配置管理 =====

    @app.get("/api/config")
    async def get_config(domain: Optional[str] = None, authenticated: bool = Depends(verify_auth)):
        domain = domain or domain_of(AppConfig.WEB_MODEL_URL)
        selectors = get_config_engine().get_site_selectors(domain)
        return {"domain": domain, "selectors": selectors.model_dump()}

    @app.post("/api/config")
    async def save_config(body: ConfigUpdateRequest, authenticated: bool = Depends(verify_auth)):
        domain = body.domain or domain_of(AppConfig.WEB_MODEL_URL)
        try:
            selectors = get_config_engine().set_site_selectors(domain, body.selectors)
        except OSError as e:
            raise HTTPException(status_code=500, detail=f"保存失败: {e}")

        # 新选择器在下次创建会话时生效
        return {"status": "success", "domain": domain, "selectors": selectors.model_dump()}

    @app.delete("/api/config/{domain}")
    async def delete_site_config(domain: str, authenticated: bool = Depends(verify_auth)):
        if get_config_engine().delete_site_config(domain):
            return {"status": "success", "message": f"已删除: {domain}"}
        raise HTTPException(status_code=404, detail=f"配置不存在: {domain}")

    # ===== 观察器常量 =====

    @app.get("/api/settings/observer-constants")
    async def get_observer_constants(authenticated: bool = Depends(verify_auth)):
        return {"config": ObserverConstants.get_all(), "defaults": ObserverConstants.get_defaults()}

    @app.post("/api/settings/observer-constants")
    async def save_observer_constants(request: Request, authenticated: bool = Depends(verify_auth)):
        """保存观察器常量，下次创建会话时生效"""
        data = await request.json()
        config = data.get("config", {})
        if not isinstance(config, dict):
            raise HTTPException(status_code=400, detail="config 应该是对象")

        try:
            saved = ObserverConstants.save(config)
        except ConfigurationError as e:
            raise HTTPException(status_code=400, detail=str(e))
        except OSError as e:
            logger.error(f"保存观察器常量失败: {e}")
            raise HTTPException(status_code=500, detail=f"保存失败: {e}")

        logger.info(f"观察器常量已保存: {len(config)} 项")
        return {"status": "success", "config": saved}

    # ===== 日志 =====

    @app.get("/api/logs")
    async def get_logs(since: float = 0, authenticated: bool = Depends(verify_auth)):
        return {"logs": log_collector.get_recent(since), "timestamp": time.time()}

    @app.delete("/api/logs")
    async def clear_logs(authenticated: bool = Depends(verify_auth)):
        log_collector.clear()
        return {"status": "success"}

    # ===== 调试 =====

    @app.get("/api/debug/request-status")
    async def request_status(request: Request, authenticated: bool = Depends(verify_auth)):
        status = request.app.state.service.status()
        status["client_listeners"] = request.app.state.client.active_requests
        return status

    @app.post("/api/debug/cancel/{request_id}")
    async def cancel_request(request_id: str, request: Request,
                             authenticated: bool = Depends(verify_auth)):
        service: WebModelService = request.app.state.service
        was_pending = request_id in service.pending_requests
        request.app.state.client.cancel(request_id)
        return {"cancelled": was_pending, "request_id": request_id}

    @app.post("/api/debug/test-selector")
    async def test_selector(body: SelectorProbeRequest, authenticated: bool = Depends(verify_auth)):
        """用 HTML 快照检验选择器"""
        if not AppConfig.DEBUG:
            raise HTTPException(status_code=403, detail="调试功能未启用")

        if body.selectors:
            validated = get_config_engine().validator.validate(body.selectors)
            selectors = SiteSelectors(**validated)
        else:
            selectors = get_config_engine().get_site_selectors(domain_of(AppConfig.WEB_MODEL_URL))

        return SnapshotLocator(body.html, selectors).probe()

    @app.get("/favicon.ico")
    async def favicon():
        return Response(status_code=204)

    @app.get("/")
    async def root():
        return {
            "service": "Web Model Bridge",
            "version": VERSION,
            "endpoints": {
                "chat": "/v1/chat/completions",
                "models": "/v1/models",
                "health": "/health",
                "config": "/api/config",
            },
            "sites_config": ConfigConstants.CONFIG_FILE,
        }

    @app.exception_handler(404)
    async def not_found_handler(request: Request, exc: HTTPException):
        return JSONResponse(
            status_code=404,
            content={"error": {"message": "接口不存在", "path": str(request.url.path)}}
        )

    @app.exception_handler(500)
    async def internal_error_handler(request: Request, exc: Exception):
        logger.error(f"内部错误: {exc}", exc_info=True)
        return JSONResponse(
            status_code=500,
            content={"error": {"message": "服务器内部错误"}}
        )


app = create_app()


# ================= 主入口 =================

if __name__ == "__main__":
    import uvicorn

    print("\n" + "=" * 60)
    print("环境变量配置（可选）:")
    print("  APP_HOST=0.0.0.0          # 监听地址")
    print("  APP_PORT=8199             # 监听端口")
    print("  APP_DEBUG=true            # 调试模式")
    print("  AUTH_ENABLED=true         # 启用认证")
    print("  AUTH_TOKEN=your-secret    # 认证令牌")
    print("  BROWSER_PORT=9222         # 浏览器端口")
    print("  WEB_MODEL_URL=...         # 目标聊天页面")
    print("=" * 60 + "\n")

    uvicorn.run(
        app,
        host=AppConfig.HOST,
        port=AppConfig.PORT,
        log_level=AppConfig.LOG_LEVEL.lower(),
        access_log=False
    )

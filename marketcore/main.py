"""
Marketcore 应用入口：FastAPI 应用实例、路由注册、生命周期和后台打款任务。
"""

import asyncio
import logging
import os
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI

load_dotenv()

# 日志配置
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
    force=True,
)

logger = logging.getLogger(__name__)

PAYOUT_INTERVAL_SECONDS = int(os.getenv("PAYOUT_INTERVAL_SECONDS", "86400"))


# ── 后台任务 ──────────────────────────────────────────────

async def _payout_batch_task() -> None:
    """定期为所有处理方执行打款批次（默认每天一次），auto_payouts_enabled=0 时跳过。

    打款流程包含阻塞的 HTTP 调用和重试等待，放到线程中执行，避免阻塞事件循环。
    """
    from marketcore.services.payout_service import PayoutService
    from marketcore.services.platform_config import get_int

    svc = PayoutService()
    while True:
        await asyncio.sleep(PAYOUT_INTERVAL_SECONDS)
        try:
            if not await asyncio.to_thread(get_int, "auto_payouts_enabled"):
                logger.info("自动打款已关闭，跳过本次定时打款")
                continue
            batches = await asyncio.to_thread(svc.run_all_providers)
            logger.info("定时打款完成，生成批次 %d 个", len(batches))
        except Exception as e:
            logger.error("定时打款任务异常: %s", e)


# ── Lifespan ──────────────────────────────────────────────

@asynccontextmanager
async def lifespan(app: FastAPI):
    """应用生命周期：启动时初始化数据库并启动后台任务。"""
    from marketcore.database import init_db

    init_db()
    logger.info("数据库初始化完成")

    tasks = []
    if os.environ.get("TESTING") != "1":
        tasks.append(asyncio.create_task(_payout_batch_task()))
        logger.info("后台任务已启动：定时打款（间隔 %d 秒）", PAYOUT_INTERVAL_SECONDS)

    yield

    for t in tasks:
        t.cancel()
        try:
            await t
        except asyncio.CancelledError:
            pass


app = FastAPI(title="Marketcore", description="Prompt 市场账本与结算核心", lifespan=lifespan)

# ── CORS 中间件（开发环境跨域） ────────────────────────────

if os.environ.get("CORS_ENABLED", "0") == "1":
    from fastapi.middleware.cors import CORSMiddleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=os.environ.get("CORS_ORIGINS", "http://localhost:5173").split(","),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

# ── 路由注册 ──────────────────────────────────────────────

from marketcore.routes.accounts import router as accounts_router
from marketcore.routes.admin import router as admin_router
from marketcore.routes.listings import router as listings_router
from marketcore.routes.purchase import router as purchase_router
from marketcore.routes.webhooks import router as webhooks_router

app.include_router(accounts_router)
app.include_router(listings_router)
app.include_router(purchase_router)
app.include_router(webhooks_router)
app.include_router(admin_router)


# ── 健康检查 ──────────────────────────────────────────────

@app.get("/health")
async def health_check():
    return {"status": "ok"}

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Dict, Optional

from fastapi import Body, FastAPI
from fastapi.responses import Response
from fastapi.middleware.cors import CORSMiddleware
from config import config
from monitoring.logging_utils import setup_logging


trading_system = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    global trading_system
    from main import TradingSystem
    trading_system = TradingSystem()
    task = asyncio.create_task(trading_system.start())
    try:
        yield
    finally:
        if trading_system:
            await trading_system.stop()
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)


app = FastAPI(title="trendrider API", version="1.0.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.api['cors_origins'],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _bot():
    if trading_system is None:
        return None
    return trading_system.bot


@app.get("/")
async def root():
    return {
        "service": "trendrider",
        "pair": config.trading.get('pair'),
        "version": "1.0.0",
        "status": "running" if trading_system and trading_system.running else "stopped"
    }

@app.get("/favicon.ico")
async def favicon():
    return Response(content=b"", media_type="image/x-icon")

@app.get("/health")
async def health():
    bot = _bot()
    return {
        "status": "healthy",
        "timestamp": datetime.utcnow().isoformat(),
        "system_running": trading_system.running if trading_system else False,
        "kill_switch": bot.kill_switch.is_triggered() if bot else False
    }

@app.get("/api/status")
async def get_status():
    bot = _bot()
    if not bot:
        return {"error": "Trading system not initialized"}
    status = bot.get_status()
    status["timestamp"] = datetime.utcnow().isoformat()
    return status

@app.get("/api/balance")
async def get_balance():
    bot = _bot()
    if not bot:
        return {"error": "Trading system not initialized"}
    balance, price = await bot.get_balance()
    return {
        **balance.as_dict(),
        "price": price,
        "equity": balance.equity(price) if price is not None else None,
        "timestamp": datetime.utcnow().isoformat()
    }

@app.get("/api/position")
async def get_position():
    bot = _bot()
    if not bot:
        return {"error": "Trading system not initialized"}
    return {
        "position": bot.get_position(),
        "timestamp": datetime.utcnow().isoformat()
    }

@app.get("/api/performance")
async def get_performance():
    bot = _bot()
    if not bot:
        return {"error": "Trading system not initialized"}
    return {
        **bot.persistence.performance().to_dict(),
        "timestamp": datetime.utcnow().isoformat()
    }

@app.post("/api/kill_switch")
async def trigger_kill_switch(data: Optional[Dict[str, Any]] = Body(default=None)):
    if not _bot():
        return {"error": "Trading system not initialized"}
    event = await trading_system.trigger_kill_switch('manual', data or {'source': 'api'})
    return {
        "status": "Kill switch triggered",
        "event": event.to_dict(),
        "timestamp": datetime.utcnow().isoformat()
    }

@app.post("/api/kill_switch/reset")
async def reset_kill_switch():
    if not _bot():
        return {"error": "Trading system not initialized"}
    result = trading_system.reset_kill_switch()
    return {
        "status": "Kill switch reset",
        "restart_required": result["restart_required"],
        "timestamp": datetime.utcnow().isoformat()
    }


if __name__ == "__main__":
    import uvicorn
    setup_logging()
    uvicorn.run(
        app,
        host=config.api['host'],
        port=config.api['port'],
        log_level="info"
    )

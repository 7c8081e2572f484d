import asyncio
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Dict

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from config import config
from monitoring.logging_utils import setup_logging
from strategy.models import TradeDecision


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


app = FastAPI(title="Bitget Consensus Trader API", version="1.0.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=list(config.api.get('cors_origins', ["*"])),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

NOT_INITIALIZED = {"error": "Trading system not initialized"}


@app.get("/")
async def root():
    return {
        "service": "Bitget Consensus Trader",
        "version": "1.0.0",
        "status": "running" if trading_system and trading_system.running else "stopped"
    }

@app.get("/health")
async def health():
    return {
        "status": "healthy",
        "timestamp": datetime.utcnow().isoformat(),
        "system_running": trading_system.running if trading_system else False,
        "details": trading_system.status() if trading_system else None,
    }

@app.get("/api/positions")
async def get_positions(include_closed: bool = False):
    if not trading_system:
        return NOT_INITIALIZED

    if include_closed:
        positions = await trading_system.store.get_positions()
    else:
        positions = trading_system.coordinator.open_positions()

    return {
        "positions": [p.to_dict() for p in positions],
        "count": len(positions),
        "timestamp": datetime.utcnow().isoformat()
    }

@app.get("/api/signals")
async def get_signals():
    if not trading_system:
        return NOT_INITIALIZED

    orchestrator = trading_system.orchestrator
    return {
        "signals": orchestrator.signals_snapshot(),
        "decisions": {symbol: d.to_dict() for symbol, d in orchestrator.last_decisions.items()},
        "timestamp": datetime.utcnow().isoformat()
    }

@app.get("/api/performance")
async def get_performance():
    if not trading_system:
        return NOT_INITIALIZED

    report = await trading_system.orchestrator.performance_report() or {"strategies": [], "overall": {}}
    return {
        "strategies": report["strategies"],
        "overall": report["overall"],
        "open_positions": trading_system.coordinator.open_position_count(),
        "drawdown_percent": trading_system.risk_manager.current_drawdown_pct,
        "timestamp": datetime.utcnow().isoformat()
    }

@app.get("/api/subscriptions")
async def get_subscriptions():
    if not trading_system:
        return NOT_INITIALIZED

    subscriptions = trading_system.market_data_manager.active_subscriptions()
    return {
        "subscriptions": subscriptions,
        "count": len(subscriptions),
        "registry_keys": trading_system.registry.keys(),
        "connections": {
            "public": trading_system.ws_client.state().value,
            "private": trading_system.ws_client.state(is_private=True).value,
        },
    }

@app.post("/api/decision")
async def post_decision(payload: Dict[str, Any]):
    if not trading_system:
        return NOT_INITIALIZED

    try:
        decision = TradeDecision.from_payload(payload)
    except (KeyError, TypeError, ValueError) as exc:
        raise HTTPException(status_code=422, detail=f"Invalid decision payload: {exc}")

    position = await trading_system.coordinator.execute(decision)
    return {
        "symbol": decision.symbol,
        "status": decision.status.value,
        "reason": decision.resolution,
        "position": position.to_dict() if position else None,
    }

@app.post("/api/analyze/{symbol}")
async def analyze_symbol(symbol: str):
    if not trading_system:
        return NOT_INITIALIZED

    symbol = symbol.upper()
    decision = await trading_system.orchestrator.analyze_symbol(symbol)
    signals = trading_system.orchestrator.last_signals.get(symbol, [])
    return {
        "symbol": symbol,
        "signals": [s.to_dict() for s in signals],
        "decision": decision.to_dict() if decision else None,
        "timestamp": datetime.utcnow().isoformat()
    }

@app.post("/api/strategies/{name}/parameters")
async def update_strategy_parameter(name: str, payload: Dict[str, Any]):
    if not trading_system:
        return NOT_INITIALIZED

    parameter = payload.get("parameter")
    if not parameter:
        raise HTTPException(status_code=422, detail="'parameter' is required")
    applied = trading_system.orchestrator.apply_parameter_update(name, parameter, payload.get("value"))
    if not applied:
        raise HTTPException(status_code=400, detail=f"Could not update {name}.{parameter}")
    return {"strategy": trading_system.orchestrator.get_strategy(name).describe()}

if __name__ == "__main__":
    import uvicorn
    setup_logging(config.monitoring.get('log_level', 'INFO'))
    uvicorn.run(
        app,
        host=config.api['host'],
        port=config.api['port'],
        log_level="info"
    )

"""
Paywalled demo server.

    PAYGATE_AGENT_ID=did:nv:... PAYGATE_API_KEY=... python examples/demo_server.py

- POST /mcp           JSON-RPC tools/call for a paywalled "forecast" tool
- POST /mcp/stream    NDJSON stream, settlement trailer as the last line
- GET  /data          plain HTTP route paywalled by PaymentMiddleware
"""

import json
import logging
import os

import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, StreamingResponse

from paygate.config import PaywallConfig
from paygate.http import PaymentMiddleware, RequestContextMiddleware, RouteConfig
from paygate.paywall import Paywall, PaywallOptions
from paygate.wire import to_jsonrpc_error

logging.basicConfig(level=logging.INFO)

config = PaywallConfig.from_env(server_name="weather")
ledger = config.create_ledger()
paywall = Paywall(ledger, config)


@paywall.paywalled(PaywallOptions.tool("forecast", credits=1))
async def forecast(args, extra, ctx):
    city = args.get("city", "nowhere")
    return {"content": [{"type": "text", "text": f"Sunny in {city}"}]}


@paywall.paywalled(PaywallOptions.tool("hourly", credits=lambda ctx: len(ctx.result or [])))
async def hourly(args, extra, ctx):
    for hour in range(int(args.get("hours", 3))):
        yield {"hour": hour, "temp": 20 + hour}


TOOLS = {"forecast": forecast}

app = FastAPI()
app.add_middleware(
    PaymentMiddleware,
    ledger=ledger,
    routes={"GET /data": RouteConfig(resource_id=os.getenv("PAYGATE_PLAN_ID", "plan"), credits=1)},
)
app.add_middleware(RequestContextMiddleware)


@app.post("/mcp")
async def mcp(request: Request):
    body = await request.json()
    params = body.get("params") or {}
    tool = TOOLS.get(params.get("name"))
    if tool is None:
        return JSONResponse({"jsonrpc": "2.0", "id": body.get("id"), "error": {"code": -32601, "message": "Unknown tool"}})
    try:
        result = await tool(params.get("arguments") or {})
    except Exception as e:
        return JSONResponse(to_jsonrpc_error(e, body.get("id")))
    return JSONResponse({"jsonrpc": "2.0", "id": body.get("id"), "result": result})


@app.post("/mcp/stream")
async def mcp_stream(request: Request):
    body = await request.json()
    try:
        stream = await hourly((body.get("params") or {}).get("arguments") or {})
    except Exception as e:
        return JSONResponse(to_jsonrpc_error(e, body.get("id")))

    async def ndjson():
        async for item in stream:
            yield json.dumps(item) + "\n"

    return StreamingResponse(ndjson(), media_type="application/x-ndjson")


@app.get("/data")
async def data():
    return {"message": "Payment successful!"}


if __name__ == "__main__":
    uvicorn.run(app, host="127.0.0.1", port=8402)

from contextlib import asynccontextmanager

from fastapi import FastAPI
from starlette.responses import Response

from blockreceipt.core.log_utils import get_logger
from blockreceipt.core.metrics import get_metrics_data
from blockreceipt.routers import nft_bot, tasks
from blockreceipt.worker import worker

logger = get_logger("api")


@asynccontextmanager
async def lifespan(app: FastAPI):
    worker.start()
    try:
        yield
    finally:
        await worker.stop()


app = FastAPI(title="BlockReceipt Task Pipeline", lifespan=lifespan)
app.include_router(tasks.router)
app.include_router(nft_bot.router)


@app.get("/ping")
def ping():
    return {"status": "ok"}


@app.get("/metrics")
def metrics():
    return Response(get_metrics_data(), media_type="text/plain")


if __name__ == "__main__":
    import uvicorn
    logger.info("Starting BlockReceipt API")
    uvicorn.run(app, host="0.0.0.0", port=50002)

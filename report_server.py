"""
报告服务入口
"""
import os

from fastapi import FastAPI

from core.lifespan import lifespan
from core.logging_config import logger
from routes.api_routes import router as api_router


def create_app() -> FastAPI:
    app = FastAPI(title="Activity Report Service", lifespan=lifespan)
    app.include_router(api_router)

    @app.get("/")
    def read_root():
        return {"message": "Activity report service is running."}

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    host = os.environ.get("REPORT_HOST", "127.0.0.1")
    port = int(os.environ.get("REPORT_PORT", "5102"))
    logger.info(f"🚀 报告服务正在启动: http://{host}:{port}")
    uvicorn.run(app, host=host, port=port)

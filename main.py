"""
MovieHub主入口
启动FastAPI服务（数据库、TMDB客户端、缓存清理任务在lifespan中初始化）
"""

import uvicorn
from loguru import logger

from moviehub.api import create_app
from moviehub.settings import global_settings


def main() -> None:
    """主函数"""
    logger.info("Starting MovieHub...")

    app = create_app()
    uvicorn.run(
        app,
        host=global_settings.api_host,
        port=global_settings.api_port,
        log_level="debug" if global_settings.debug else "info",
    )

    logger.info("MovieHub stopped")


if __name__ == "__main__":
    main()

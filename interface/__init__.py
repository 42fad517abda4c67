"""用户接口模块

目前提供 Web 接口（FastAPI JSON API），前台收银与管理后台共用：

    ```python
    from interface import WebServer

    server = WebServer(db_manager=db, port=8080)
    await server.startup()
    ```
"""
from interface.web.server import WebServer

__all__ = ["WebServer"]

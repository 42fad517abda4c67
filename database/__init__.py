"""数据库模块

- models: SQLAlchemy ORM 模型
- connection / base_crud: 连接管理与通用 CRUD
- entity_repos / business_repos / system_repos: 各领域仓库
- manager: DatabaseManager 统一门面
"""
from .manager import DatabaseManager

__all__ = ["DatabaseManager"]

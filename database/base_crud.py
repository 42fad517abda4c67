"""通用 CRUD 基类。

所有仓库继承 BaseCRUD 获得按主键读写、条件查询、计数等通用能力。
每个方法都接受可选的外部会话：传入时在该会话内执行且不提交，
由调用方统一提交，便于把多步写入放在同一个事务中。
"""
from typing import Any, Dict, List, Optional, Type, TypeVar

from sqlalchemy.orm import Session

from .connection import DatabaseConnection

ModelT = TypeVar("ModelT")


class BaseCRUD:
    """通用 CRUD 操作。

    Attributes:
        conn: 数据库连接管理器。
    """

    def __init__(self, conn: DatabaseConnection) -> None:
        self.conn = conn

    def _get_session(self) -> Session:
        """获取新的数据库会话（调用方负责关闭，推荐 with 语句）。"""
        return self.conn.get_session()

    def get_by_id(self, model: Type[ModelT], record_id: Any,
                  session: Optional[Session] = None) -> Optional[ModelT]:
        """按主键获取记录。

        Args:
            model: 模型类。
            record_id: 主键值。
            session: 外部会话（可选）。

        Returns:
            模型对象，不存在返回 None。
        """
        if session:
            return session.get(model, record_id)

        with self._get_session() as sess:
            return sess.get(model, record_id)

    def get_all(self, model: Type[ModelT],
                filters: Optional[Dict[str, Any]] = None,
                order_by: Any = None,
                limit: Optional[int] = None,
                session: Optional[Session] = None) -> List[ModelT]:
        """按等值条件查询记录列表。

        Args:
            model: 模型类。
            filters: 字段名到值的等值过滤条件。
            order_by: 排序表达式（可选）。
            limit: 最大返回条数（可选）。
            session: 外部会话（可选）。

        Returns:
            模型对象列表。
        """
        def _query(sess):
            query = sess.query(model)
            if filters:
                query = query.filter_by(**filters)
            if order_by is not None:
                query = query.order_by(order_by)
            if limit:
                query = query.limit(limit)
            return query.all()

        if session:
            return _query(session)

        with self._get_session() as sess:
            return _query(sess)

    def count(self, model: Type[ModelT],
              filters: Optional[Dict[str, Any]] = None,
              session: Optional[Session] = None) -> int:
        """统计满足等值条件的记录数。"""
        def _query(sess):
            query = sess.query(model)
            if filters:
                query = query.filter_by(**filters)
            return query.count()

        if session:
            return _query(session)

        with self._get_session() as sess:
            return _query(sess)

    def create(self, model: Type[ModelT],
               session: Optional[Session] = None, **fields: Any) -> ModelT:
        """创建记录。

        Args:
            model: 模型类。
            session: 外部会话（可选，传入时只 flush 不提交）。
            **fields: 字段值。

        Returns:
            新建的模型对象。
        """
        def _do(sess):
            obj = model(**fields)
            sess.add(obj)
            sess.flush()
            sess.refresh(obj)
            return obj

        if session:
            return _do(session)

        with self._get_session() as sess:
            obj = _do(sess)
            sess.commit()
            sess.refresh(obj)
            sess.expunge(obj)
            return obj

    def update_by_id(self, model: Type[ModelT], record_id: Any,
                     session: Optional[Session] = None,
                     **fields: Any) -> Optional[ModelT]:
        """按主键更新字段。

        Args:
            model: 模型类。
            record_id: 主键值。
            session: 外部会话（可选）。
            **fields: 需要更新的字段值。

        Returns:
            更新后的模型对象，不存在返回 None。
        """
        def _do(sess):
            obj = sess.get(model, record_id)
            if obj is None:
                return None
            for key, value in fields.items():
                if not hasattr(obj, key):
                    raise ValueError(
                        f"{model.__name__} has no field '{key}'"
                    )
                setattr(obj, key, value)
            sess.flush()
            return obj

        if session:
            return _do(session)

        with self._get_session() as sess:
            obj = _do(sess)
            if obj is None:
                return None
            sess.commit()
            sess.refresh(obj)
            sess.expunge(obj)
            return obj

    def delete_by_id(self, model: Type[ModelT], record_id: Any,
                     session: Optional[Session] = None) -> bool:
        """按主键删除记录。

        Returns:
            是否删除成功。
        """
        def _do(sess):
            obj = sess.get(model, record_id)
            if obj is None:
                return False
            sess.delete(obj)
            sess.flush()
            return True

        if session:
            return _do(session)

        with self._get_session() as sess:
            deleted = _do(sess)
            sess.commit()
            return deleted

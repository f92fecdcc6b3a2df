"""通用 CRUD 基类。

为各子仓库提供与具体模型无关的增删改查能力。所有方法都接受可选的
外部会话：传入时在该会话内执行、由调用方负责提交；未传入时自行开启
会话并提交。
"""
from typing import Optional, List, Dict, Any, Type, TypeVar
from sqlalchemy.orm import Session

from .connection import DatabaseConnection
from .models import Base

ModelT = TypeVar("ModelT", bound=Base)


class BaseCRUD:
    """通用 CRUD 基类。

    Attributes:
        conn: 数据库连接管理器。
    """

    def __init__(self, conn: DatabaseConnection) -> None:
        self.conn = conn

    def _get_session(self) -> Session:
        """获取新的数据库会话。"""
        return self.conn.get_session()

    def get_by_id(self, model: Type[ModelT], record_id: int,
                  session: Optional[Session] = None) -> Optional[ModelT]:
        """按主键获取记录。

        Args:
            model: ORM 模型类。
            record_id: 主键ID。
            session: 外部会话（可选）。

        Returns:
            模型对象，不存在返回 None。
        """
        def _query(sess):
            return sess.query(model).filter(model.id == record_id).first()

        if session:
            return _query(session)

        with self._get_session() as sess:
            return _query(sess)

    def get_all(self, model: Type[ModelT],
                filters: Optional[Dict[str, Any]] = None,
                session: Optional[Session] = None) -> List[ModelT]:
        """按等值条件获取记录列表。

        Args:
            model: ORM 模型类。
            filters: 字段名到值的等值过滤条件（可选）。
            session: 外部会话（可选）。

        Returns:
            模型对象列表。
        """
        def _query(sess):
            query = sess.query(model)
            if filters:
                query = query.filter_by(**filters)
            return query.all()

        if session:
            return _query(session)

        with self._get_session() as sess:
            return _query(sess)

    def create(self, model: Type[ModelT],
               session: Optional[Session] = None, **kwargs) -> ModelT:
        """创建记录。

        Args:
            model: ORM 模型类。
            session: 外部会话（可选）。
            **kwargs: 字段值。

        Returns:
            新建的模型对象。
        """
        def _do(sess):
            obj = model(**kwargs)
            sess.add(obj)
            sess.flush()
            sess.refresh(obj)
            return obj

        if session:
            return _do(session)

        with self._get_session() as sess:
            obj = _do(sess)
            sess.commit()
            return obj

    def update_by_id(self, model: Type[ModelT], record_id: int,
                     session: Optional[Session] = None,
                     **kwargs) -> Optional[ModelT]:
        """按主键更新记录。

        未知字段会被忽略。

        Args:
            model: ORM 模型类。
            record_id: 主键ID。
            session: 外部会话（可选）。
            **kwargs: 需要更新的字段值。

        Returns:
            更新后的模型对象，不存在返回 None。
        """
        def _do(sess):
            obj = sess.query(model).filter(model.id == record_id).first()
            if obj is None:
                return None
            for key, value in kwargs.items():
                if hasattr(obj, key):
                    setattr(obj, key, value)
            sess.flush()
            sess.refresh(obj)
            return obj

        if session:
            return _do(session)

        with self._get_session() as sess:
            obj = _do(sess)
            if obj is not None:
                sess.commit()
            return obj

    def delete_by_id(self, model: Type[ModelT], record_id: int,
                     session: Optional[Session] = None) -> bool:
        """按主键删除记录。

        Returns:
            是否删除成功（记录不存在时返回 False）。
        """
        def _do(sess):
            obj = sess.query(model).filter(model.id == record_id).first()
            if obj is None:
                return False
            sess.delete(obj)
            sess.flush()
            return True

        if session:
            return _do(session)

        with self._get_session() as sess:
            deleted = _do(sess)
            if deleted:
                sess.commit()
            return deleted

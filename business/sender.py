"""消息发送接口 - 用于解耦邮件投递"""
import uuid
from abc import ABC, abstractmethod
from typing import Optional

from loguru import logger


class MessageSender(ABC):
    """
    消息发送抽象基类

    自动化动作只依赖这个接口，接入具体的邮件服务商时
    只需要实现 send，不需要修改处理器与执行器
    """

    @abstractmethod
    def send(self, action_type: str, subject: str, body: str,
             recipient: str) -> Optional[str]:
        """
        发送一条消息

        Args:
            action_type: 触发本次发送的动作类型
            subject: 邮件标题
            body: HTML 正文
            recipient: 收件地址

        Returns:
            发送成功时返回服务商的消息ID，失败返回 None
        """
        pass


class LoggingSender(MessageSender):
    """只写日志、不真正投递的发送器（本地运行与演练使用）"""

    def send(self, action_type: str, subject: str, body: str,
             recipient: str) -> Optional[str]:
        message_id = f"dry-run-{uuid.uuid4().hex[:12]}"
        logger.info(
            f"[dry-run] {action_type} to {recipient}: {subject} "
            f"({len(body)} bytes, id={message_id})"
        )
        return message_id

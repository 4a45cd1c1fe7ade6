from sqlalchemy import Column, Index, Integer, Text

from app.database import Base


class LineMessage(Base):
    """One user turn received over LINE together with the generated answer."""

    __tablename__ = "line_messages"
    __table_args__ = (Index("ix_line_messages_user_id_created_at", "user_id", "created_at"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    conversation_id = Column(Text, nullable=False, default="")  # "" or lowercase UUID
    user_id = Column(Text)
    message_type = Column(Text)  # text, image
    message_content = Column(Text)
    image_url = Column(Text)
    dify_response = Column(Text)
    created_at = Column(Text, nullable=False)  # ISO-8601
    updated_at = Column(Text, nullable=False)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "conversation_id": self.conversation_id,
            "user_id": self.user_id,
            "message_type": self.message_type,
            "message_content": self.message_content,
            "image_url": self.image_url,
            "dify_response": self.dify_response,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

"""
Therapy session and message models
"""
from sqlalchemy import Column, Integer, String, Text, DateTime, ForeignKey, Float, Boolean
from sqlalchemy.orm import relationship
from datetime import datetime
from therapai.database import Base

class TherapySession(Base):
    """A conversation container"""
    __tablename__ = "sessions"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String(64), ForeignKey("users.id"), nullable=False, index=True)

    title = Column(String, nullable=False)
    session_type = Column(String, nullable=False, default="chat")  # chat, voice, video

    start_time = Column(DateTime, default=datetime.utcnow)
    end_time = Column(DateTime)  # set when the session is closed

    message_count = Column(Integer, default=0)
    total_words = Column(Integer, default=0)
    average_sentiment = Column(Float, default=0.0)  # mean over scored messages only

    summary = Column(Text)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    user = relationship("User", back_populates="sessions")
    messages = relationship(
        "Message",
        back_populates="session",
        order_by="Message.timestamp",
        cascade="all, delete-orphan",
    )

class Message(Base):
    """One turn of a session, append-only"""
    __tablename__ = "messages"

    id = Column(Integer, primary_key=True, index=True)
    session_id = Column(Integer, ForeignKey("sessions.id"), nullable=False, index=True)

    content = Column(Text, nullable=False)
    is_user = Column(Boolean, nullable=False)
    timestamp = Column(DateTime, default=datetime.utcnow)

    audio_url = Column(Text)
    video_url = Column(Text)
    word_count = Column(Integer, default=0)
    sentiment_score = Column(Float)

    session = relationship("TherapySession", back_populates="messages")

class UsageRecord(Base):
    """Per-call usage of a metered feature"""
    __tablename__ = "usage_tracking"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String(64), ForeignKey("users.id"), nullable=False, index=True)
    feature = Column(String, nullable=False)  # e.g. ai_chat
    tokens_used = Column(Integer, default=0)
    created_at = Column(DateTime, default=datetime.utcnow)

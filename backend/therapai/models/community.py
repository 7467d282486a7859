"""
Community board models
"""
from sqlalchemy import Column, Integer, String, Text, DateTime, ForeignKey, Boolean, JSON, UniqueConstraint
from sqlalchemy.orm import relationship
from datetime import datetime
from therapai.database import Base

REACTION_TYPES = ("thumbs_up", "handshake", "comment")

def empty_reactions():
    return {reaction: 0 for reaction in REACTION_TYPES}

class CommunityPost(Base):
    """Anonymous founder post"""
    __tablename__ = "community_posts"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String(64), ForeignKey("users.id"), nullable=False)
    anonymous_id = Column(String, nullable=False)
    content = Column(Text, nullable=False)

    # Counter per reaction type
    reactions = Column(JSON, default=empty_reactions)
    is_deleted = Column(Boolean, default=False)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    comments = relationship("CommunityComment", back_populates="post")

class CommunityReaction(Base):
    """One user's reaction of one type to a post"""
    __tablename__ = "community_post_reactions"
    __table_args__ = (UniqueConstraint("post_id", "user_id", "reaction_type"),)

    id = Column(Integer, primary_key=True, index=True)
    post_id = Column(Integer, ForeignKey("community_posts.id"), nullable=False)
    user_id = Column(String(64), ForeignKey("users.id"), nullable=False)
    reaction_type = Column(String, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)

class CommunityComment(Base):
    """Anonymous reply under a post"""
    __tablename__ = "community_comments"

    id = Column(Integer, primary_key=True, index=True)
    post_id = Column(Integer, ForeignKey("community_posts.id"), nullable=False)
    user_id = Column(String(64), ForeignKey("users.id"), nullable=False)
    anonymous_id = Column(String, nullable=False)
    content = Column(Text, nullable=False)
    is_deleted = Column(Boolean, default=False)
    created_at = Column(DateTime, default=datetime.utcnow)

    post = relationship("CommunityPost", back_populates="comments")

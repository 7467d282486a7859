"""
Community board CRUD operations
"""
import random
from datetime import datetime
from typing import Dict, List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from therapai.models.community import (
    CommunityPost, CommunityReaction, CommunityComment, REACTION_TYPES, empty_reactions,
)

def generate_anonymous_id() -> str:
    # Not unique and not a security boundary
    return f"Anon Founder #{random.randint(0, 9999):04d}"

def create_post(db: Session, user_id: str, content: str) -> CommunityPost:
    post = CommunityPost(
        user_id=user_id,
        anonymous_id=generate_anonymous_id(),
        content=content,
        reactions=empty_reactions(),
    )
    db.add(post)
    db.commit()
    db.refresh(post)
    return post

def get_post(db: Session, post_id: int) -> Optional[CommunityPost]:
    return db.query(CommunityPost).filter(
        CommunityPost.id == post_id,
        CommunityPost.is_deleted.is_(False)
    ).first()

def list_posts(db: Session, requesting_user_id: str, limit: int = 50) -> List[Dict]:
    """Latest posts with counters, the caller's reactions and comment counts"""
    posts = db.query(CommunityPost).filter(
        CommunityPost.is_deleted.is_(False)
    ).order_by(CommunityPost.created_at.desc(), CommunityPost.id.desc()).limit(limit).all()
    if not posts:
        return []

    post_ids = [post.id for post in posts]

    own_reactions: Dict[int, List[str]] = {}
    for reaction in db.query(CommunityReaction).filter(
        CommunityReaction.post_id.in_(post_ids),
        CommunityReaction.user_id == requesting_user_id
    ).order_by(CommunityReaction.created_at.asc()):
        own_reactions.setdefault(reaction.post_id, []).append(reaction.reaction_type)

    comment_counts = dict(
        db.query(CommunityComment.post_id, func.count(CommunityComment.id)).filter(
            CommunityComment.post_id.in_(post_ids),
            CommunityComment.is_deleted.is_(False)
        ).group_by(CommunityComment.post_id).all()
    )

    results = []
    for post in posts:
        mine = own_reactions.get(post.id, [])
        results.append({
            "id": post.id,
            "anonymous_id": post.anonymous_id,
            "content": post.content,
            "created_at": post.created_at,
            "reactions": {**empty_reactions(), **(post.reactions or {})},
            "user_reaction": mine[-1] if mine else None,
            "user_reactions": mine,
            "comment_count": comment_counts.get(post.id, 0),
            "is_own": post.user_id == requesting_user_id,
        })
    return results

def add_reaction(db: Session, post: CommunityPost, user_id: str, reaction_type: str) -> bool:
    """Record a reaction; True when it was new and the counter moved"""
    if reaction_type not in REACTION_TYPES:
        raise ValueError(f"Unknown reaction type: {reaction_type}")

    existing = db.query(CommunityReaction).filter(
        CommunityReaction.post_id == post.id,
        CommunityReaction.user_id == user_id,
        CommunityReaction.reaction_type == reaction_type
    ).first()
    if existing:
        return False

    db.add(CommunityReaction(post_id=post.id, user_id=user_id, reaction_type=reaction_type))
    reactions = {**empty_reactions(), **(post.reactions or {})}
    reactions[reaction_type] += 1
    # reassign so the JSON column is flagged dirty
    post.reactions = reactions
    post.updated_at = datetime.utcnow()
    db.commit()
    db.refresh(post)
    return True

def create_comment(db: Session, post: CommunityPost, user_id: str, content: str) -> CommunityComment:
    comment = CommunityComment(
        post_id=post.id,
        user_id=user_id,
        anonymous_id=generate_anonymous_id(),
        content=content,
    )
    db.add(comment)
    db.commit()
    db.refresh(comment)
    return comment

def list_comments(db: Session, post_id: int) -> List[CommunityComment]:
    return db.query(CommunityComment).filter(
        CommunityComment.post_id == post_id,
        CommunityComment.is_deleted.is_(False)
    ).order_by(CommunityComment.created_at.asc(), CommunityComment.id.asc()).all()

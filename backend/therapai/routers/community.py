"""
Community board routes
"""
from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session
from datetime import datetime
from typing import Literal

from therapai.crud import community as crud_community
from therapai.database import get_db
from therapai.routers.deps import get_current_user

router = APIRouter(
    prefix="/api/community",
    tags=["community"]
)

class PostCreate(BaseModel):
    content: str = Field(..., min_length=1, max_length=2000)

class ReactionCreate(BaseModel):
    reaction_type: Literal["thumbs_up", "handshake", "comment"]

class CommentCreate(BaseModel):
    content: str = Field(..., min_length=1, max_length=2000)

class CommentResponse(BaseModel):
    id: int
    post_id: int
    anonymous_id: str
    content: str
    created_at: datetime

    class Config:
        from_attributes = True

def _post_or_404(db: Session, post_id: int):
    post = crud_community.get_post(db, post_id)
    if post is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Post not found"
        )
    return post

@router.get("/posts")
async def list_posts(
    current_user = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    return {"success": True, "data": crud_community.list_posts(db, current_user.id)}

@router.post("/posts", status_code=status.HTTP_201_CREATED)
async def create_post(
    post: PostCreate,
    current_user = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    db_post = crud_community.create_post(db, current_user.id, post.content)
    return {
        "success": True,
        "data": {
            "id": db_post.id,
            "anonymous_id": db_post.anonymous_id,
            "content": db_post.content,
            "created_at": db_post.created_at,
            "reactions": db_post.reactions,
        },
    }

@router.post("/posts/{post_id}/reactions")
async def react_to_post(
    post_id: int,
    reaction: ReactionCreate,
    current_user = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    post = _post_or_404(db, post_id)
    added = crud_community.add_reaction(db, post, current_user.id, reaction.reaction_type)
    return {"success": True, "data": {"added": added, "reactions": post.reactions}}

@router.get("/posts/{post_id}/comments")
async def list_comments(
    post_id: int,
    current_user = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    _post_or_404(db, post_id)
    comments = crud_community.list_comments(db, post_id)
    return {"success": True, "data": [CommentResponse.model_validate(c) for c in comments]}

@router.post("/posts/{post_id}/comments", status_code=status.HTTP_201_CREATED)
async def create_comment(
    post_id: int,
    comment: CommentCreate,
    current_user = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    post = _post_or_404(db, post_id)
    db_comment = crud_community.create_comment(db, post, current_user.id, comment.content)
    return {"success": True, "data": CommentResponse.model_validate(db_comment)}

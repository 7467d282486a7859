"""
Therapy session and message CRUD operations
"""
from sqlalchemy.orm import Session
from therapai.models.session import TherapySession, Message, UsageRecord
from typing import Dict, Iterable, List, Optional
from datetime import date, datetime, timedelta

SESSION_TYPES = ("chat", "voice", "video")

def count_words(text: str) -> int:
    return len(text.split())

def default_title(session_type: str) -> str:
    return f"{session_type.capitalize()} Session"

def create_session(
    db: Session,
    user_id: str,
    session_type: str = "chat",
    title: Optional[str] = None
) -> TherapySession:
    """Open a new therapy session"""
    db_session = TherapySession(
        user_id=user_id,
        title=title or default_title(session_type),
        session_type=session_type,
        start_time=datetime.utcnow(),
        message_count=0,
        total_words=0,
        average_sentiment=0.0
    )

    db.add(db_session)
    db.commit()
    db.refresh(db_session)

    return db_session

def get_session(db: Session, session_id: int) -> Optional[TherapySession]:
    """Fetch a session by id"""
    return db.query(TherapySession).filter(
        TherapySession.id == session_id
    ).first()

def get_user_session(db: Session, session_id: int, user_id: str) -> Optional[TherapySession]:
    """Fetch a session only if it belongs to the user"""
    return db.query(TherapySession).filter(
        TherapySession.id == session_id,
        TherapySession.user_id == user_id
    ).first()

def get_user_sessions(
    db: Session,
    user_id: str,
    skip: int = 0,
    limit: int = 20
) -> List[TherapySession]:
    """List a user's sessions, newest first"""
    return db.query(TherapySession).filter(
        TherapySession.user_id == user_id
    ).order_by(TherapySession.start_time.desc(), TherapySession.id.desc()).offset(skip).limit(limit).all()

def count_sessions_since(db: Session, user_id: str, since: datetime) -> int:
    return db.query(TherapySession).filter(
        TherapySession.user_id == user_id,
        TherapySession.start_time >= since
    ).count()

def end_session(
    db: Session,
    session_id: int,
    user_id: str,
    summary: Optional[str] = None
) -> Optional[TherapySession]:
    """Close a session by stamping end_time"""
    db_session = get_user_session(db, session_id, user_id)

    if db_session:
        db_session.end_time = datetime.utcnow()
        if summary is not None:
            db_session.summary = summary
        db_session.updated_at = datetime.utcnow()

        db.commit()
        db.refresh(db_session)

    return db_session

def add_message(
    db: Session,
    db_session: TherapySession,
    content: str,
    is_user: bool,
    audio_url: Optional[str] = None,
    video_url: Optional[str] = None,
    sentiment_score: Optional[float] = None,
    commit: bool = True
) -> Message:
    """Append a message and roll the session counters forward"""
    words = count_words(content)

    if sentiment_score is not None:
        scored = db.query(Message).filter(
            Message.session_id == db_session.id,
            Message.sentiment_score.isnot(None)
        ).count()
        previous = db_session.average_sentiment or 0.0
        db_session.average_sentiment = (previous * scored + sentiment_score) / (scored + 1)

    message = Message(
        session_id=db_session.id,
        content=content,
        is_user=is_user,
        timestamp=datetime.utcnow(),
        audio_url=audio_url,
        video_url=video_url,
        word_count=words,
        sentiment_score=sentiment_score
    )
    db.add(message)

    db_session.message_count = (db_session.message_count or 0) + 1
    db_session.total_words = (db_session.total_words or 0) + words
    db_session.updated_at = datetime.utcnow()

    if commit:
        db.commit()
        db.refresh(message)

    return message

def get_session_messages(
    db: Session,
    session_id: int,
    limit: Optional[int] = None
) -> List[Message]:
    """Messages of a session in chronological order; with a limit, the most recent ones"""
    query = db.query(Message).filter(Message.session_id == session_id)
    if limit is None:
        return query.order_by(Message.timestamp.asc(), Message.id.asc()).all()

    recent = query.order_by(Message.timestamp.desc(), Message.id.desc()).limit(limit).all()
    return list(reversed(recent))

def record_usage(db: Session, user_id: str, feature: str, tokens_used: int) -> UsageRecord:
    """Write one usage record"""
    record = UsageRecord(user_id=user_id, feature=feature, tokens_used=tokens_used)
    db.add(record)
    db.commit()
    return record

def calculate_streak_days(days: Iterable[date]) -> int:
    """Consecutive calendar days ending at the most recent day"""
    unique_days = sorted(set(days))
    if not unique_days:
        return 0

    streak = 1
    for i in range(len(unique_days) - 1, 0, -1):
        if unique_days[i] - unique_days[i - 1] == timedelta(days=1):
            streak += 1
        else:
            break
    return streak

def get_user_stats(db: Session, user_id: str) -> Dict:
    """Aggregate statistics over a user's sessions"""
    sessions = db.query(TherapySession).filter(TherapySession.user_id == user_id).all()
    session_ids = [s.id for s in sessions]

    total_messages = 0
    if session_ids:
        total_messages = db.query(Message).filter(
            Message.session_id.in_(session_ids),
            Message.is_user.is_(True)
        ).count()

    sessions_by_type: Dict[str, int] = {}
    total_seconds = 0.0
    for s in sessions:
        sessions_by_type[s.session_type] = sessions_by_type.get(s.session_type, 0) + 1
        if s.start_time and s.end_time:
            total_seconds += (s.end_time - s.start_time).total_seconds()

    total_sessions = len(sessions)
    total_minutes = round(total_seconds / 60)
    favorite_mode = max(sessions_by_type, key=sessions_by_type.get) if sessions_by_type else "chat"
    average_sentiment = (
        sum(s.average_sentiment or 0.0 for s in sessions) / total_sessions if total_sessions else 0.0
    )

    return {
        "total_sessions": total_sessions,
        "total_messages": total_messages,
        "total_words": sum(s.total_words or 0 for s in sessions),
        "total_minutes": total_minutes,
        "average_session_length": round(total_seconds / 60 / total_sessions) if total_sessions else 0,
        "sessions_by_type": sessions_by_type,
        "favorite_mode": favorite_mode,
        "streak_days": calculate_streak_days(s.start_time.date() for s in sessions if s.start_time),
        "average_sentiment": average_sentiment,
    }

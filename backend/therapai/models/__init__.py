"""
Model imports
"""
# Base first
from therapai.database import Base

# then every model so they register on Base.metadata
from therapai.models.user import User
from therapai.models.session import TherapySession, Message, UsageRecord
from therapai.models.subscription import Subscription, UserApiKeys
from therapai.models.community import CommunityPost, CommunityReaction, CommunityComment

__all__ = ["Base", "User", "TherapySession", "Message", "UsageRecord",
           "Subscription", "UserApiKeys",
           "CommunityPost", "CommunityReaction", "CommunityComment"]

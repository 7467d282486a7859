"""
Application settings
"""
import os
from dotenv import load_dotenv

load_dotenv()

# Server
FRONTEND_URL = os.getenv("FRONTEND_URL", "http://localhost:5173")
BACKEND_URL = os.getenv("BACKEND_URL", "http://localhost:3001")

# Logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

# Database, SQLite unless DATABASE_URL points at Postgres
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./therapai.db")

# Auth
SECRET_KEY = os.getenv("SECRET_KEY") or os.getenv("JWT_SECRET", "your-secret-key-here-change-in-production")
ALGORITHM = os.getenv("ALGORITHM", "HS256")
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", str(60 * 24 * 7)))  # 7 days
SUPABASE_JWT_SECRET = os.getenv("SUPABASE_JWT_SECRET")

# AI
AI_MODEL_PREFERENCE = os.getenv("AI_MODEL_PREFERENCE", "gemini")  # gemini, openai, claude
AI_TIMEOUT_SECONDS = int(os.getenv("AI_TIMEOUT_SECONDS", "60"))
GEMINI_API_KEY = os.getenv("GEMINI_API_KEY") or os.getenv("GOOGLE_API_KEY")
GEMINI_MODEL = os.getenv("GEMINI_MODEL", "gemini-1.5-flash")
OPENAI_API_KEY = os.getenv("OPENAI_API_KEY")
ANTHROPIC_API_KEY = os.getenv("ANTHROPIC_API_KEY")

DEFAULT_FALLBACK_ORDER = ["gemini", "openai", "claude"]

# Messages of a session sent back to the model as context
CHAT_HISTORY_LIMIT = 20

# Voice / video
ELEVENLABS_API_KEY = os.getenv("ELEVENLABS_API_KEY")
ELEVENLABS_VOICE_ID = os.getenv("ELEVENLABS_VOICE_ID", "pNInz6obpgDQGcFmaJgB")
TAVUS_API_KEY = os.getenv("TAVUS_API_KEY")
TAVUS_REPLICA_ID = os.getenv("TAVUS_REPLICA_ID")
VIDEO_POLL_INTERVAL_SECONDS = float(os.getenv("VIDEO_POLL_INTERVAL_SECONDS", "5"))
VIDEO_POLL_MAX_ATTEMPTS = int(os.getenv("VIDEO_POLL_MAX_ATTEMPTS", "60"))

HTTP_TIMEOUT_SECONDS = float(os.getenv("HTTP_TIMEOUT_SECONDS", "30"))

# Billing
REVENUECAT_API_KEY = os.getenv("REVENUECAT_API_KEY")
REVENUECAT_WEBHOOK_SECRET = os.getenv("REVENUECAT_WEBHOOK_SECRET")
STRIPE_SECRET_KEY = os.getenv("STRIPE_SECRET_KEY")
STRIPE_WEBHOOK_SECRET = os.getenv("STRIPE_WEBHOOK_SECRET")
STRIPE_PRICE_BY_PLAN = {
    "premium": os.getenv("STRIPE_PRICE_PREMIUM", "price_premium_monthly"),
    "pro": os.getenv("STRIPE_PRICE_PRO", "price_pro_monthly"),
}

FREE_SESSIONS_PER_MONTH = int(os.getenv("FREE_SESSIONS_PER_MONTH", "5"))

PLANS = [
    {
        "id": "free",
        "tier": "free",
        "name": "Free",
        "price": 0,
        "currency": "USD",
        "interval": "month",
        "features": [
            "Text chat only",
            "5 sessions per month",
            "Basic therapy log",
            "Community access",
        ],
    },
    {
        "id": "premium_monthly",
        "tier": "premium",
        "name": "Premium",
        "price": 19.99,
        "currency": "USD",
        "interval": "month",
        "features": [
            "Voice responses with ElevenLabs",
            "Unlimited sessions",
            "Advanced analytics",
            "Priority support",
            "Export session data",
            "Multiple languages",
        ],
        "popular": True,
    },
    {
        "id": "pro_monthly",
        "tier": "pro",
        "name": "Pro",
        "price": 39.99,
        "currency": "USD",
        "interval": "month",
        "features": [
            "Video avatar responses with Tavus",
            "All Premium features",
            "Custom therapy plans",
            "1-on-1 support",
            "API access",
            "White-label options",
        ],
    },
]

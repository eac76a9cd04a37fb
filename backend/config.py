import os
from dotenv import load_dotenv

load_dotenv()

MONGODB_URL = os.getenv("MONGODB_URL", "mongodb://localhost:27017")
MONGODB_DATABASE = os.getenv("MONGODB_DATABASE", "asistente")

# External task tracker
TRACKER_API_URL = os.getenv("TRACKER_API_URL", "https://wlserver-production.up.railway.app/api")
TRACKER_USERS_URL = os.getenv("TRACKER_USERS_URL", "https://wlserver-production-6735.up.railway.app")
TRACKER_TIMEOUT = float(os.getenv("TRACKER_TIMEOUT", "15"))

TOKEN_SECRET = os.getenv("TOKEN_SECRET")

# LLM providers, tried in this order: Gemini -> Groq pool -> Anthropic
GEMINI_API_KEY = os.getenv("GEMINI_API_KEY")
GEMINI_MODEL = os.getenv("GEMINI_MODEL", "gemini-2.5-flash-lite")
GROQ_API_KEYS = [
    key for key in (os.getenv("GROQ_API_KEY_1"), os.getenv("GROQ_API_KEY_2"))
    if key and key.strip()
]
GROQ_MODEL = os.getenv("GROQ_MODEL", "llama-3.1-8b-instant")
ANTHROPIC_API_KEY = os.getenv("ANTHROPIC_API_KEY")
ANTHROPIC_MODEL = os.getenv("ANTHROPIC_MODEL", "claude-sonnet-4-5")

CORS_ORIGINS = [
    origin.strip()
    for origin in os.getenv("CORS_ORIGINS", "http://localhost:5173").split(",")
    if origin.strip()
]
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

import os

from dotenv import load_dotenv

load_dotenv()

# -------------------- Server --------------------

HOST = os.getenv("HOST", "0.0.0.0")
PORT = int(os.getenv("PORT", "3000"))
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

# -------------------- Downloads --------------------

OUTPUT_DIR = os.path.abspath(os.getenv("OUTPUT_DIR", "output"))
YTDLP_BINARY = os.getenv("YTDLP_BINARY", "yt-dlp")

# Google resumable uploads require chunks in multiples of 256 KiB
UPLOAD_CHUNK_SIZE = int(os.getenv("UPLOAD_CHUNK_SIZE", str(8 * 1024 * 1024)))

# -------------------- Jobs --------------------

JOB_STORE_BACKEND = os.getenv("JOB_STORE_BACKEND", "memory").lower()
WEBHOOK_TIMEOUT = float(os.getenv("WEBHOOK_TIMEOUT", "10"))

"""Application configuration with sensible defaults."""
import os

# Gemini configuration (embeddings + chat)
GEMINI_API_KEY = os.getenv("GEMINI_API_KEY", "")
GEMINI_BASE_URL = os.getenv(
    "GEMINI_BASE_URL", "https://generativelanguage.googleapis.com/v1beta"
)
EMBEDDING_MODEL = os.getenv("EMBEDDING_MODEL", "text-embedding-004")
CHAT_MODEL = os.getenv("GEMINI_MODEL", "gemini-2.0-flash")

# Every stored vector and every index must have exactly this many dimensions
EMBEDDING_DIMENSION = 768

# Pinecone configuration
PINECONE_API_KEY = os.getenv("PINECONE_API_KEY", "")
PINECONE_INDEX_NAME = os.getenv("PINECONE_INDEX_NAME", "")
PINECONE_CLOUD = os.getenv("PINECONE_CLOUD", "aws")
PINECONE_REGION = os.getenv("PINECONE_REGION", "us-east-1")
PINECONE_CONTROL_URL = os.getenv("PINECONE_CONTROL_URL", "https://api.pinecone.io")
PINECONE_API_VERSION = os.getenv("PINECONE_API_VERSION", "2025-01")
PINECONE_NAMESPACE = os.getenv("PINECONE_NAMESPACE", "")

# "pinecone" for the hosted index, "faiss" for an in-process index (dev only)
VECTOR_BACKEND = os.getenv("VECTOR_BACKEND", "pinecone")

# Index lifecycle
INDEX_DELETE_SETTLE_SECONDS = float(os.getenv("INDEX_DELETE_SETTLE_SECONDS", "2.0"))
INDEX_READY_TIMEOUT = float(os.getenv("INDEX_READY_TIMEOUT", "300.0"))
FETCH_BATCH_SIZE = int(os.getenv("FETCH_BATCH_SIZE", "100"))

# RAG parameters (character-based to avoid tokenizer inconsistencies)
CHUNK_SIZE = int(os.getenv("CHUNK_SIZE", "1000"))
CHUNK_OVERLAP = int(os.getenv("CHUNK_OVERLAP", "200"))
RETRIEVAL_TOP_K = int(os.getenv("RETRIEVAL_TOP_K", "5"))
HISTORY_WINDOW = int(os.getenv("HISTORY_WINDOW", "10"))  # prior turns sent to the model

# HTTP
HTTP_TIMEOUT = float(os.getenv("HTTP_TIMEOUT", "60.0"))
MAX_UPLOAD_BYTES = int(os.getenv("MAX_UPLOAD_BYTES", str(10 * 1024 * 1024)))

# Logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

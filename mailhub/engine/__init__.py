"""Mail engine: storage, threading, sync, pagination and links behind a FastAPI app."""

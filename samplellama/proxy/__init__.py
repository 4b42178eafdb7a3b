from .server import create_app
from .emitter import chat_frames, generate_frames

__all__ = [
    "create_app",
    "chat_frames",
    "generate_frames",
]

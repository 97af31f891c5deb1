"""Summary services: AI chat connection, Workers AI backend and the summary generator."""
from meetstream.services.ai_connection import AIConnection, get_ai_connection
from meetstream.services.cloudflare_chat import CloudflareChatBackend
from meetstream.services.summary import SummaryGenerator, create_summary_backend, create_summary_generator

__all__ = [
    "AIConnection",
    "get_ai_connection",
    "CloudflareChatBackend",
    "SummaryGenerator",
    "create_summary_backend",
    "create_summary_generator",
]

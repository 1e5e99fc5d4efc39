# AI-service adapters.
__all__ = [
    "base",
    "openai_services",
]

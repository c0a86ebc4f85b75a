"""
WhatsApp template handling.

- transformer:  render provider payloads and live-chat records from templates
- status_sync:  mirror provider-side template status into storage
"""
from templates.transformer import (
    TransformError,
    build_api_message,
    build_chat_message,
    render_body,
)
from templates.status_sync import TemplateStatusSync

__all__ = [
    "TransformError", "build_api_message", "build_chat_message", "render_body",
    "TemplateStatusSync",
]

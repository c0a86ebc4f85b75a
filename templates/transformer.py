"""
Message Transformer — turns a stored template plus a WebEngage request into
the gateway payload and the human-readable live-chat record.

Both builders are pure: no I/O, no clock. Malformed combinations (media
template without a media link, unknown header type, carousel without
cards) raise TransformError.
"""
from __future__ import annotations

import re
from typing import Any, Optional

from models.schemas import TemplateRecord, UserRecord

_PLACEHOLDER = re.compile(r"{{(.*?)}}")

MEDIA_TYPES = ("IMAGE", "VIDEO", "DOCUMENT")

# request template type → (chat header type, human label)
_MEDIA_HEADERS = {
    "image": ("image", "image"),
    "video": ("video", "video"),
    "document": ("file", "document"),
}


class TransformError(Exception):
    """The template and the request data cannot be combined into a message."""


def _template_data(data: dict[str, Any]) -> tuple[dict[str, Any], dict[str, Any]]:
    whatsapp_data = data.get("whatsAppData") or {}
    return whatsapp_data, whatsapp_data.get("templateData") or {}


def build_api_message(
    template_id: Optional[str], data: dict[str, Any], user: Optional[UserRecord],
) -> dict[str, Any]:
    """Build the send-message payload for the WhatsApp gateway."""
    whatsapp_data, template_data = _template_data(data)
    template_type = (template_data.get("type") or "").upper()
    variables = list(template_data.get("templateVariables") or [])

    api_message: dict[str, Any] = {
        "templateId": template_id or "template_ID",
        "to": whatsapp_data.get("toNumber") or "recipient_phone_number",
        "from": (
            (user.business_whatsapp_number if user else None)
            or whatsapp_data.get("fromNumber")
            or "business_phone_number"
        ),
        "message": {
            "headerVars": [],
            "variables": variables,
            "payload": [],
            "carouselCard": [],
            "suffix": [],
        },
    }

    media_url = template_data.get("mediaUrl")
    if media_url and template_type in MEDIA_TYPES:
        attachment = {"type": template_type, "url": media_url}
        if template_type == "DOCUMENT":
            attachment["filename"] = (
                template_data.get("fileName")
                or template_data.get("buttonUrlParam")
                or "Document"
            )
        api_message["mediaAttachment"] = attachment

    button_param = template_data.get("buttonUrlParam")
    if button_param:
        attachment = api_message.get("mediaAttachment")
        if template_type == "DOCUMENT" and not template_data.get("fileName") and attachment:
            # for documents the button parameter doubles as the file name
            attachment.setdefault("filename", button_param)
        else:
            api_message["message"]["suffix"].append(button_param)

    if template_type == "AUTHENTICATION" and variables:
        api_message["message"]["suffix"] = [variables[0]]

    return api_message


def render_body(message: str, variables: list[Any]) -> str:
    """Substitute {{n}} placeholders left to right with the given variables."""
    for variable in variables:
        message = _PLACEHOLDER.sub(lambda _m: str(variable), message, count=1)
    return message


def build_chat_message(template: TemplateRecord, data: dict[str, Any]) -> dict[str, Any]:
    """Build the live-chat record shown to agents for this send."""
    whatsapp_data, template_data = _template_data(data)

    chat: dict[str, Any] = {
        "name": template.name,
        "category": template.category,
        "message": render_body(template.message or "", template_data.get("templateVariables") or []),
    }

    request_type = (template_data.get("type") or "").lower()
    if request_type == "text":
        chat["header"] = template.header
        chat["headerType"] = "text"
    elif request_type in _MEDIA_HEADERS:
        header_type, label = _MEDIA_HEADERS[request_type]
        chat["header"] = template_data.get("mediaUrl")
        chat["headerType"] = header_type
        if not chat["header"]:
            raise TransformError(
                f"Link to the {label} file is absent. Please attach a link to the {label} file."
            )
    elif template.header_type and template.header_type.lower() != "none":
        raise TransformError(
            "Invalid header type. Header types must be one of "
            "'text', 'image', 'video', or 'document'."
        )

    if template.footer:
        chat["footer"] = template.footer
    if template.actions:
        chat["actions"] = template.actions
    if template.type:
        chat["category"] = template.type

    if template.sub_type == "carousel":
        chat["subType"] = template.sub_type
        chat["cards"] = list(template.cards or [])
        if not chat["cards"]:
            raise TransformError("Carousel cards are absent. Please add carousel cards.")

    return {
        "to": whatsapp_data.get("toNumber"),
        "type": "marketing",
        "template": chat,
    }

"""HTML email templates. Every user-supplied value is escaped."""

from html import escape
from typing import Optional

SUBJECT_TEMPLATE = 'New message from {sender_name} about "{listing_title}" on UME'


def new_message_subject(sender_name: str, listing_title: str) -> str:
    return SUBJECT_TEMPLATE.format(sender_name=sender_name, listing_title=listing_title)


def conversation_url(base_url: str, listing_id: str) -> str:
    return f"{base_url.rstrip('/')}/messages?listing={listing_id}"


def new_message_html(
    *,
    recipient_name: Optional[str],
    sender_name: str,
    listing_title: str,
    message_preview: str,
    conversation_link: str,
) -> str:
    recipient = escape(recipient_name or "there")
    sender = escape(sender_name)
    title = escape(listing_title)
    preview = escape(message_preview)
    link = escape(conversation_link, quote=True)
    return f"""<!DOCTYPE html>
<html>
  <body style="font-family: Arial, sans-serif; background: #f6f6f6; padding: 24px;">
    <div style="max-width: 560px; margin: 0 auto; background: #ffffff; border-radius: 8px; padding: 24px;">
      <h2 style="color: #1f2937;">You have a new message</h2>
      <p>Hi {recipient},</p>
      <p><strong>{sender}</strong> sent you a message about <strong>{title}</strong>:</p>
      <blockquote style="border-left: 4px solid #6366f1; margin: 16px 0; padding: 8px 16px; color: #374151;">
        {preview}
      </blockquote>
      <p>
        <a href="{link}" style="display: inline-block; background: #6366f1; color: #ffffff; padding: 10px 18px; border-radius: 6px; text-decoration: none;">View Conversation</a>
      </p>
      <p style="color: #6b7280; font-size: 12px;">
        You received this email because you were away when the message arrived.
        We send at most one email per conversation until you are back on UME.
      </p>
    </div>
  </body>
</html>
"""

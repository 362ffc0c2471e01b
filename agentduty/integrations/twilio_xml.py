from xml.sax.saxutils import escape

XML_DECLARATION = '<?xml version="1.0" encoding="UTF-8"?>'


def twiml_response(*messages: str) -> str:
    """Messaging TwiML replying with each text as its own <Message>."""
    body = "".join(f"<Message>{escape(text)}</Message>" for text in messages if text)
    return f"{XML_DECLARATION}<Response>{body}</Response>"


def twiml_message(text: str) -> str:
    return twiml_response(text)


def twiml_empty() -> str:
    return twiml_response()

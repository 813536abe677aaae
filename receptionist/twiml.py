"""TwiML responses for the voice webhooks.

Built with ElementTree; every webhook answers with one of these documents.
"""

from __future__ import annotations

from typing import Optional
from xml.etree.ElementTree import Element, SubElement, tostring

from fastapi.responses import Response


class TwiML:
    """Fluent builder for a ``<Response>`` document."""

    def __init__(self) -> None:
        self._root = Element("Response")

    def say(self, text: str, parent: Optional[Element] = None) -> "TwiML":
        SubElement(parent if parent is not None else self._root, "Say").text = text
        return self

    def gather(self, action: str, prompt: str = "") -> "TwiML":
        """Collect one speech utterance and POST it to ``action``."""
        gather_el = SubElement(self._root, "Gather")
        gather_el.set("input", "speech")
        gather_el.set("action", action)
        gather_el.set("method", "POST")
        gather_el.set("speechTimeout", "auto")
        if prompt:
            self.say(prompt, parent=gather_el)
        return self

    def redirect(self, url: str) -> "TwiML":
        redirect_el = SubElement(self._root, "Redirect")
        redirect_el.set("method", "POST")
        redirect_el.text = url
        return self

    def dial(self, number: str, action: str, timeout: int = 20) -> "TwiML":
        dial_el = SubElement(self._root, "Dial")
        dial_el.set("action", action)
        dial_el.set("method", "POST")
        dial_el.set("timeout", str(timeout))
        dial_el.text = number
        return self

    def record(self, action: str, max_length: int = 120) -> "TwiML":
        record_el = SubElement(self._root, "Record")
        record_el.set("action", action)
        record_el.set("method", "POST")
        record_el.set("maxLength", str(max_length))
        record_el.set("playBeep", "true")
        return self

    def connect_stream(self, url: str, parameters: Optional[dict[str, str]] = None) -> "TwiML":
        """Open a bidirectional Media Stream to ``url``."""
        connect_el = SubElement(self._root, "Connect")
        stream_el = SubElement(connect_el, "Stream")
        stream_el.set("url", url)
        for name, value in (parameters or {}).items():
            param_el = SubElement(stream_el, "Parameter")
            param_el.set("name", name)
            param_el.set("value", value)
        return self

    def hangup(self) -> "TwiML":
        SubElement(self._root, "Hangup")
        return self

    def to_xml(self) -> str:
        return tostring(self._root, encoding="unicode", xml_declaration=True)

    def response(self) -> Response:
        return Response(content=self.to_xml(), media_type="application/xml")

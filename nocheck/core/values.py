"""
Typed field values.

Raw responses carry one of value_text / value_number / value_json, shaped by the
field type. parse_field_value() turns a raw response into exactly one of the
value classes below so the engines never have to inspect JSON shapes themselves.
"""

import json
from dataclasses import dataclass, field
from typing import Any, List, Optional, Union

from .schema import FieldResponse

INLINE_MEDIA_MIN_LENGTH = 1000


@dataclass(frozen=True)
class EmptyValue:
    """No usable answer was given."""
    pass


@dataclass(frozen=True)
class TextValue:
    text: str


@dataclass(frozen=True)
class NumberValue:
    number: float


@dataclass(frozen=True)
class YesNoValue:
    answer: str


@dataclass(frozen=True)
class ChoiceValue:
    selected: str


@dataclass(frozen=True)
class MultiSelectValue:
    selected: tuple


@dataclass(frozen=True)
class PhotoValue:
    items: tuple
    uploaded: bool = False


@dataclass(frozen=True)
class SignatureValue:
    data: str


@dataclass(frozen=True)
class RawValue:
    """Field types the engines do not interpret (date, gps, barcode...)."""
    payload: Any = field(default=None, hash=False, compare=False)
    text: Optional[str] = None


FieldValue = Union[
    EmptyValue, TextValue, NumberValue, YesNoValue, ChoiceValue,
    MultiSelectValue, PhotoValue, SignatureValue, RawValue,
]


def looks_like_media(item: Any) -> bool:
    """True for URLs and inline (data URI / long base64) payloads."""
    if not isinstance(item, str):
        return False
    return item.startswith("data:") or item.startswith("http") or len(item) > INLINE_MEDIA_MIN_LENGTH


def extract_photos(value_json: Any) -> Optional[List[Any]]:
    """Return the photo list of a response, or None if it carries no photos.

    Two shapes are accepted: {"photos": [...]} and the legacy bare list of strings.
    """
    if isinstance(value_json, dict):
        photos = value_json.get("photos")
        if isinstance(photos, list):
            return photos
        return None

    if isinstance(value_json, list) and value_json and isinstance(value_json[0], str):
        if looks_like_media(value_json[0]):
            return value_json

    return None


def _text_or_empty(text: Optional[str]):
    if text is None or not str(text).strip():
        return EmptyValue()
    return TextValue(str(text))


def _selected_items(response: FieldResponse) -> List[str]:
    if isinstance(response.value_json, list):
        return [str(v) for v in response.value_json]
    if response.value_text:
        try:
            decoded = json.loads(response.value_text)
        except (json.JSONDecodeError, ValueError):
            return []
        if isinstance(decoded, list):
            return [str(v) for v in decoded]
    return []


def parse_field_value(field_type: str, response: Optional[FieldResponse]) -> FieldValue:
    """Parse a raw response into a typed value according to its field type."""
    if response is None:
        return EmptyValue()

    if field_type == "yes_no":
        answer = None
        if isinstance(response.value_json, dict):
            answer = response.value_json.get("answer")
        if not answer:
            answer = response.value_text
        if not answer:
            return EmptyValue()
        return YesNoValue(str(answer))

    if field_type in ("number", "rating"):
        if response.value_number is None:
            return EmptyValue()
        return NumberValue(float(response.value_number))

    if field_type == "dropdown":
        if response.value_text is None or not response.value_text.strip():
            return EmptyValue()
        return ChoiceValue(response.value_text)

    if field_type == "checkbox_multiple":
        selected = _selected_items(response)
        if not selected:
            return EmptyValue()
        return MultiSelectValue(tuple(selected))

    if field_type == "text":
        return _text_or_empty(response.value_text)

    if field_type == "photo":
        photos = extract_photos(response.value_json)
        if not photos:
            return EmptyValue()
        uploaded = isinstance(response.value_json, dict) and bool(response.value_json.get("uploadedToDrive"))
        return PhotoValue(tuple(photos), uploaded)

    if field_type == "signature":
        data = None
        if isinstance(response.value_json, dict):
            data = response.value_json.get("signature") or response.value_json.get("dataUrl")
        data = data or response.value_text
        if not data:
            return EmptyValue()
        return SignatureValue(str(data))

    if response.value_text is None and response.value_number is None and response.value_json is None:
        return EmptyValue()
    text = response.value_text
    if text is None and response.value_number is not None:
        text = str(response.value_number)
    return RawValue(payload=response.value_json, text=text)


def display_value(value: FieldValue) -> str:
    """Human readable rendering used in action plan titles and alerts."""
    if isinstance(value, TextValue):
        return value.text
    if isinstance(value, NumberValue):
        number = value.number
        return str(int(number)) if number == int(number) else str(number)
    if isinstance(value, YesNoValue):
        return value.answer
    if isinstance(value, ChoiceValue):
        return value.selected
    if isinstance(value, MultiSelectValue):
        return ", ".join(value.selected)
    if isinstance(value, PhotoValue):
        return f"{len(value.items)} foto(s)"
    if isinstance(value, SignatureValue):
        return "assinatura"
    if isinstance(value, RawValue):
        return value.text or ""
    return ""

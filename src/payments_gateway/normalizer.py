"""Response normalization: raw processor payloads to CanonicalResult.

Every connector describes its processor with a ``ProcessorProfile`` made of
small pure functions (success predicate, message and token extractors,
code tables). ``ResponseNormalizer`` flattens the wire payload into a field
map and runs the profile over it, so no connector hand-rolls its own
response parsing.
"""

import enum
import json
import logging
import re
import xml.etree.ElementTree as ET
from collections import Counter, defaultdict
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, FrozenSet, Mapping, Optional, Sequence
from urllib.parse import unquote_plus

from .models import CanonicalResult, ErrorCode, TransactionAction, VerificationResult
from .tokens import AuthorizationTokenCodec

logger = logging.getLogger(__name__)

Fields = Dict[str, Any]


class WireFormat(str, enum.Enum):
    """Response body shapes the normalizer can flatten."""
    XML = "xml"
    JSON = "json"
    QUERY_STRING = "query_string"
    DELIMITED = "delimited"


class ResponseParseError(ValueError):
    """The response body is not in the shape the processor promised."""


# Street/postal verdicts shared by most card networks.
AVS_CODES: Dict[str, VerificationResult] = {
    "D": VerificationResult.MATCH,
    "F": VerificationResult.MATCH,
    "M": VerificationResult.MATCH,
    "X": VerificationResult.MATCH,
    "Y": VerificationResult.MATCH,
    "A": VerificationResult.PARTIAL_MATCH,
    "B": VerificationResult.PARTIAL_MATCH,
    "P": VerificationResult.PARTIAL_MATCH,
    "W": VerificationResult.PARTIAL_MATCH,
    "Z": VerificationResult.PARTIAL_MATCH,
    "C": VerificationResult.NO_MATCH,
    "N": VerificationResult.NO_MATCH,
    "E": VerificationResult.UNSUPPORTED,
    "G": VerificationResult.UNSUPPORTED,
    "I": VerificationResult.UNSUPPORTED,
    "R": VerificationResult.UNSUPPORTED,
    "S": VerificationResult.UNSUPPORTED,
    "U": VerificationResult.UNSUPPORTED,
}

CVV_CODES: Dict[str, VerificationResult] = {
    "M": VerificationResult.MATCH,
    "N": VerificationResult.NO_MATCH,
    "D": VerificationResult.NO_MATCH,
    "I": VerificationResult.NO_MATCH,
    "P": VerificationResult.NOT_CHECKED,
    "S": VerificationResult.NOT_CHECKED,
    "U": VerificationResult.UNSUPPORTED,
    "X": VerificationResult.UNSUPPORTED,
}

# XML 1.0 forbids most C0 control characters; some processors emit them anyway.
_INVALID_XML_CHARS = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f]")


def _join(prefix: str, key: Any) -> str:
    return f"{prefix}.{key}" if prefix else str(key)


def _local_name(tag: str) -> str:
    return tag.rsplit("}", 1)[-1]


def _add_repeatable(fields: Fields, counts: Dict[str, int], key: str, value: Any) -> None:
    seen = counts[key]
    if seen == 0:
        fields[key] = value
    else:
        if seen == 1:
            fields[_join(key, 0)] = fields.pop(key)
        fields[_join(key, seen)] = value
    counts[key] = seen + 1


def _flatten_value(fields: Fields, prefix: str, value: Any) -> None:
    if isinstance(value, dict) and value:
        for key, item in value.items():
            _flatten_value(fields, _join(prefix, key), item)
    elif isinstance(value, list) and value:
        for index, item in enumerate(value):
            _flatten_value(fields, _join(prefix, index), item)
    else:
        fields[prefix] = value


def flatten_json(body: str) -> Fields:
    """Flatten a JSON object; nested keys are dotted, arrays are indexed."""
    try:
        data = json.loads(body)
    except (json.JSONDecodeError, TypeError) as e:
        raise ResponseParseError(f"Invalid JSON: {e}") from e
    if not isinstance(data, dict):
        raise ResponseParseError(f"Expected a JSON object, got {type(data).__name__}")
    return flatten_mapping(data)


def flatten_mapping(data: Mapping[str, Any]) -> Fields:
    """Flatten an already decoded object (an SDK response) like a JSON body."""
    fields: Fields = {}
    for key, value in data.items():
        _flatten_value(fields, str(key), value)
    return fields


def _flatten_element(fields: Fields, prefix: str, element: ET.Element) -> None:
    for name, value in element.attrib.items():
        fields[_join(prefix, _local_name(name))] = value

    children = list(element)
    if not children:
        if prefix:
            fields[prefix] = (element.text or "").strip()
        return

    totals = Counter(_local_name(child.tag) for child in children)
    positions: Dict[str, int] = defaultdict(int)
    for child in children:
        tag = _local_name(child.tag)
        key = _join(prefix, tag)
        if totals[tag] > 1:
            key = _join(key, positions[tag])
            positions[tag] += 1
        _flatten_element(fields, key, child)


def flatten_xml(body: str) -> Fields:
    """Flatten an XML document below its root element.

    Child elements and attributes become dotted keys; repeated sibling
    elements are indexed (``Transaction.API_Field.0.Field_Value``).
    """
    try:
        root = ET.fromstring(_INVALID_XML_CHARS.sub("", body))
    except (ET.ParseError, TypeError) as e:
        raise ResponseParseError(f"Invalid XML: {e}") from e
    fields: Fields = {}
    if len(root) == 0 and not root.attrib:
        fields[_local_name(root.tag)] = (root.text or "").strip()
        return fields
    _flatten_element(fields, "", root)
    return fields


def flatten_query_string(body: str, separator: str = "&", key_prefix: str = "") -> Fields:
    """Flatten ``key=value`` pairs.

    With the default ``&`` separator the body is form-encoded and values are
    unquoted; other separators (the newline ASCII format) are taken as-is.
    """
    if body is None or not body.strip():
        raise ResponseParseError("Empty response body")
    fields: Fields = {}
    counts: Dict[str, int] = defaultdict(int)
    for pair in body.split(separator):
        pair = pair.strip()
        if not pair:
            continue
        if "=" not in pair:
            raise ResponseParseError(f"Malformed key/value pair: {pair[:40]!r}")
        key, value = pair.split("=", 1)
        key, value = key.strip(), value.strip()
        if separator == "&":
            key, value = unquote_plus(key), unquote_plus(value)
        if key_prefix and key.startswith(key_prefix):
            key = key[len(key_prefix):]
        _add_repeatable(fields, counts, key, value)
    return fields


def flatten_delimited(body: str, delimiter: str, field_names: Sequence[str]) -> Fields:
    """Name positional values of a delimiter-joined legacy response."""
    if body is None or not body.strip():
        raise ResponseParseError("Empty response body")
    values = body.strip().split(delimiter)
    if len(values) < len(field_names):
        raise ResponseParseError(
            f"Expected at least {len(field_names)} fields, got {len(values)}"
        )
    fields: Fields = dict(zip(field_names, values))
    for index, value in enumerate(values[len(field_names):]):
        fields[_join("extra", index)] = value
    return fields


@dataclass
class ProcessorProfile:
    """Processor-specific strategies plugged into the shared normalizer."""
    name: str
    wire_format: WireFormat
    success: Callable[[Fields, TransactionAction], bool]
    separator: str = "&"
    key_prefix: str = ""
    delimiter: str = "|"
    field_names: Sequence[str] = ()
    reshape: Optional[Callable[[Fields], Fields]] = None
    error_message_fields: Sequence[str] = ()
    message_fields: Sequence[str] = ()
    extract_message: Optional[Callable[[Fields, bool], Optional[str]]] = None
    extract_token_fields: Optional[
        Callable[[Fields, TransactionAction], Optional[Sequence[Optional[str]]]]
    ] = None
    response_code_field: Optional[str] = None
    error_codes: Mapping[str, ErrorCode] = field(default_factory=dict)
    default_error_code: ErrorCode = ErrorCode.PROCESSING_ERROR
    avs_field: Optional[str] = None
    cvv_field: Optional[str] = None
    avs_codes: Mapping[str, VerificationResult] = field(default_factory=lambda: dict(AVS_CODES))
    cvv_codes: Mapping[str, VerificationResult] = field(default_factory=lambda: dict(CVV_CODES))
    # Vendor codes documented as "may have been applied". Empty unless the
    # processor says otherwise; unlisted codes are definite failures.
    ambiguous_codes: FrozenSet[str] = frozenset()
    approved_message: str = "Transaction approved"
    default_failure_message: str = "Unspecified error"


class ResponseNormalizer:
    """Turn a raw response body into a CanonicalResult. Never raises."""

    def __init__(self, profile: ProcessorProfile, codec: Optional[AuthorizationTokenCodec] = None):
        self.profile = profile
        self.codec = codec or AuthorizationTokenCodec()

    def parse(self, body: str) -> Fields:
        """Flatten a body according to the profile's wire format.

        Raises:
            ResponseParseError: If the body is not in that format.
        """
        profile = self.profile
        if profile.wire_format == WireFormat.JSON:
            return flatten_json(body)
        if profile.wire_format == WireFormat.XML:
            return flatten_xml(body)
        if profile.wire_format == WireFormat.QUERY_STRING:
            return flatten_query_string(body, profile.separator, profile.key_prefix)
        return flatten_delimited(body, profile.delimiter, profile.field_names)

    def normalize(
        self,
        body: Optional[str],
        action: TransactionAction,
        status_code: int = 200,
        test: bool = False,
        amount: Optional[int] = None,
    ) -> CanonicalResult:
        """Normalize a response body.

        A non-2xx status whose body parses is a business failure delivered
        over HTTP, not a transport problem, so it is interpreted like any
        other response and can never be a success.
        """
        action = TransactionAction(action)
        try:
            fields = self.parse(body)
        except ResponseParseError as e:
            return self._parse_failure(body, status_code, test, amount, str(e))
        return self._interpret(fields, action, status_code, test, amount, body, reshape=True)

    def interpret(
        self,
        fields: Fields,
        action: TransactionAction,
        status_code: int = 200,
        test: bool = False,
        amount: Optional[int] = None,
    ) -> CanonicalResult:
        """Run the profile over an already flat field map."""
        return self._interpret(
            fields, TransactionAction(action), status_code, test, amount, fields, reshape=False
        )

    def _interpret(self, fields, action, status_code, test, amount, body, reshape):
        try:
            if reshape and self.profile.reshape:
                fields = self.profile.reshape(fields)
            return self._build_result(fields, action, status_code, test, amount)
        except (KeyError, IndexError, TypeError, ValueError, AttributeError) as e:
            return self._parse_failure(body, status_code, test, amount, f"{type(e).__name__}: {e}")

    def _build_result(
        self,
        fields: Fields,
        action: TransactionAction,
        status_code: int,
        test: bool,
        amount: Optional[int],
    ) -> CanonicalResult:
        profile = self.profile
        success = bool(profile.success(fields, action)) and 200 <= status_code < 300

        vendor_code = fields.get(profile.response_code_field) if profile.response_code_field else None
        vendor_code = None if vendor_code in (None, "") else str(vendor_code)

        error_code = None
        if not success:
            error_code = profile.error_codes.get(vendor_code, profile.default_error_code)

        return CanonicalResult(
            success=success,
            message=self._message_from(fields, success),
            authorization=self._authorization_from(fields, action),
            avs_result=self._verification(fields, profile.avs_field, profile.avs_codes),
            cvv_result=self._verification(fields, profile.cvv_field, profile.cvv_codes),
            error_code=error_code,
            provider_response_code=vendor_code,
            amount=amount,
            raw=fields,
            test=test,
        )

    def _message_from(self, fields: Fields, success: bool) -> str:
        profile = self.profile
        if profile.extract_message:
            message = profile.extract_message(fields, success)
            if message:
                return message
        for key in (*profile.error_message_fields, *profile.message_fields):
            value = fields.get(key)
            if value not in (None, ""):
                return str(value)
        return profile.approved_message if success else profile.default_failure_message

    def _authorization_from(self, fields: Fields, action: TransactionAction) -> Optional[str]:
        if not self.profile.extract_token_fields:
            return None
        token_fields = self.profile.extract_token_fields(fields, action)
        if not token_fields:
            return None
        values = [None if value is None else str(value) for value in token_fields]
        try:
            return self.codec.encode(values)
        except ValueError as e:
            # The result itself stays intact; the raw fields still carry the ids.
            logger.error(f"{self.profile.name}: cannot encode authorization token: {e}")
            return None

    @staticmethod
    def _verification(
        fields: Fields,
        key: Optional[str],
        table: Mapping[str, VerificationResult],
    ) -> VerificationResult:
        code = fields.get(key) if key else None
        if code in (None, ""):
            return VerificationResult.NOT_CHECKED
        return table.get(str(code).strip().upper(), VerificationResult.UNSUPPORTED)

    def _parse_failure(
        self,
        body: Any,
        status_code: int,
        test: bool,
        amount: Optional[int],
        detail: str,
    ) -> CanonicalResult:
        logger.warning(f"{self.profile.name}: unparseable response (HTTP {status_code}): {detail}")
        return CanonicalResult.failure(
            f"Invalid response received from the {self.profile.name} API.",
            ErrorCode.PARSE_ERROR,
            raw={"unparsed_body": body, "status_code": status_code, "parse_error": detail},
            amount=amount,
            test=test,
        )

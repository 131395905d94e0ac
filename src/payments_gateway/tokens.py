"""Authorization token codec.

Connectors hand callers one opaque string after authorize, purchase and
store. It packs every upstream identifier a later capture, refund, void or
unstore needs, in a fixed field order per connector.
"""

from typing import Dict, List, Optional, Sequence

DEFAULT_DELIMITER = ";"


class AuthorizationTokenCodec:
    """Encode and decode delimiter-joined authorization tokens.

    Field positions are significant: an empty interior field stays an empty
    segment. Trailing ``None`` fields are dropped on encode and come back as
    ``None`` when the caller asks for a fixed number of fields.
    """

    def __init__(self, delimiter: str = DEFAULT_DELIMITER):
        if not delimiter:
            raise ValueError("delimiter must be a non-empty string")
        self.delimiter = delimiter

    def encode(self, fields: Sequence[Optional[str]]) -> Optional[str]:
        """Join fields into a token.

        Raises:
            ValueError: If a field contains the delimiter.
        """
        values = list(fields)
        while values and values[-1] is None:
            values.pop()
        if not values:
            return None

        segments = []
        for position, value in enumerate(values):
            segment = "" if value is None else str(value)
            if self.delimiter in segment:
                raise ValueError(
                    f"Authorization field {position} contains the delimiter "
                    f"{self.delimiter!r}"
                )
            segments.append(segment)
        return self.delimiter.join(segments)

    def decode(self, token: Optional[str], expected: Optional[int] = None) -> List[Optional[str]]:
        """Split a token into its fields.

        When ``expected`` is given, a short token is padded with ``None``
        for the missing trailing fields instead of raising.
        """
        fields: List[Optional[str]] = [] if token is None else token.split(self.delimiter)
        if expected is not None and len(fields) < expected:
            fields.extend([None] * (expected - len(fields)))
        return fields

    def unpack(self, token: Optional[str], layout: Sequence[str]) -> Dict[str, Optional[str]]:
        """Decode a token into a dict keyed by the connector's field layout."""
        fields = self.decode(token, expected=len(layout))
        return dict(zip(layout, fields))

    def field(self, token: Optional[str], position: int) -> Optional[str]:
        fields = self.decode(token, expected=position + 1)
        return fields[position]

"""Tests for response flattening and normalization."""

import pytest

from payments_gateway.models import ErrorCode, TransactionAction, VerificationResult
from payments_gateway.normalizer import (
    ProcessorProfile,
    ResponseNormalizer,
    ResponseParseError,
    WireFormat,
    flatten_delimited,
    flatten_json,
    flatten_query_string,
    flatten_xml,
)


def _json_profile(**overrides):
    options = dict(
        name="Acme",
        wire_format=WireFormat.JSON,
        success=lambda fields, action: fields.get("status") == "approved",
        message_fields=("message",),
        extract_token_fields=lambda fields, action: [fields.get("id"), fields.get("last4")],
        response_code_field="code",
        error_codes={"05": ErrorCode.CARD_DECLINED},
        avs_field="avs",
        cvv_field="cvv",
    )
    options.update(overrides)
    return ProcessorProfile(**options)


class TestFlatten:
    """Tests for the wire-format flatteners."""

    def test_json_nested_and_arrays(self):
        fields = flatten_json('{"id": "ch_1", "card": {"last4": "4242"}, "tags": ["a", "b"], "empty": {}}')
        assert fields == {
            "id": "ch_1",
            "card.last4": "4242",
            "tags.0": "a",
            "tags.1": "b",
            "empty": {},
        }

    def test_json_must_be_object(self):
        with pytest.raises(ResponseParseError):
            flatten_json("[1, 2]")

    def test_json_invalid(self):
        with pytest.raises(ResponseParseError):
            flatten_json("<html>")

    def test_xml_repeated_siblings_are_indexed(self):
        body = (
            "<Batch><Transaction>"
            "<API_Field><Field_Number>0001</Field_Number><Field_Value>01</Field_Value></API_Field>"
            "<API_Field><Field_Number>0002</Field_Number><Field_Value>1.00</Field_Value></API_Field>"
            "</Transaction></Batch>"
        )
        fields = flatten_xml(body)
        assert fields["Transaction.API_Field.0.Field_Number"] == "0001"
        assert fields["Transaction.API_Field.1.Field_Value"] == "1.00"

    def test_xml_attributes_and_namespaces(self):
        fields = flatten_xml('<r xmlns="urn:x"><status code="00">ok</status></r>')
        assert fields["status.code"] == "00"

    def test_xml_strips_control_characters(self):
        fields = flatten_xml("<r><msg>bad\x01char</msg></r>")
        assert fields["msg"] == "badchar"

    def test_xml_invalid(self):
        with pytest.raises(ResponseParseError):
            flatten_xml("not xml")

    def test_query_string_form_encoded(self):
        fields = flatten_query_string("result=0&message=APPROVAL+OK&name=a%26b")
        assert fields == {"result": "0", "message": "APPROVAL OK", "name": "a&b"}

    def test_query_string_newline_with_prefix(self):
        body = "ssl_result=0\nssl_result_message=APPROVAL\nssl_txn_id=AA49315-1\n"
        fields = flatten_query_string(body, "\n", "ssl_")
        assert fields == {"result": "0", "result_message": "APPROVAL", "txn_id": "AA49315-1"}

    def test_query_string_repeated_keys(self):
        fields = flatten_query_string("a=1&a=2&a=3")
        assert fields == {"a.0": "1", "a.1": "2", "a.2": "3"}

    def test_query_string_malformed(self):
        with pytest.raises(ResponseParseError):
            flatten_query_string("<html><body>Error</body></html>")

    def test_query_string_empty(self):
        with pytest.raises(ResponseParseError):
            flatten_query_string("   ")

    def test_delimited(self):
        fields = flatten_delimited("1|This transaction has been approved.|AUTH01|extra", "|", ["code", "message", "auth"])
        assert fields == {"code": "1", "message": "This transaction has been approved.", "auth": "AUTH01", "extra.0": "extra"}

    def test_delimited_too_short(self):
        with pytest.raises(ResponseParseError):
            flatten_delimited("1|x", "|", ["a", "b", "c"])


class TestResponseNormalizer:
    """Tests for ResponseNormalizer.normalize."""

    def test_approved(self):
        normalizer = ResponseNormalizer(_json_profile())
        result = normalizer.normalize(
            '{"status": "approved", "message": "Approved", "id": "TXN123", "last4": "4242", "avs": "Y", "cvv": "M"}',
            TransactionAction.AUTHORIZE,
            amount=1000,
            test=True,
        )

        assert result.success is True
        assert result.message == "Approved"
        assert result.authorization == "TXN123;4242"
        assert result.avs_result == VerificationResult.MATCH
        assert result.cvv_result == VerificationResult.MATCH
        assert result.error_code is None
        assert result.amount == 1000
        assert result.test is True
        assert result.raw["id"] == "TXN123"

    def test_decline_maps_error_code(self):
        normalizer = ResponseNormalizer(_json_profile())
        result = normalizer.normalize(
            '{"status": "declined", "code": "05", "message": "Do not honor"}', TransactionAction.PURCHASE
        )
        assert result.success is False
        assert result.error_code == ErrorCode.CARD_DECLINED
        assert result.provider_response_code == "05"
        assert result.message == "Do not honor"

    def test_unknown_code_uses_default(self):
        normalizer = ResponseNormalizer(_json_profile())
        result = normalizer.normalize('{"status": "declined", "code": "ZZ"}', TransactionAction.PURCHASE)
        assert result.error_code == ErrorCode.PROCESSING_ERROR
        assert result.message == "Unspecified error"

    def test_non_2xx_with_body_is_a_business_failure(self):
        """A 4xx with a parseable body is interpreted, never a success."""
        normalizer = ResponseNormalizer(_json_profile())
        result = normalizer.normalize(
            '{"status": "approved", "code": "05", "message": "Rejected"}', TransactionAction.PURCHASE, status_code=402
        )
        assert result.success is False
        assert result.error_code == ErrorCode.CARD_DECLINED
        assert result.message == "Rejected"

    @pytest.mark.parametrize("status_code", [301, 302, 304])
    def test_redirect_with_approved_body_is_not_a_success(self, status_code):
        normalizer = ResponseNormalizer(_json_profile())
        result = normalizer.normalize('{"status": "approved", "id": "ch_1"}', TransactionAction.PURCHASE, status_code=status_code)

        assert result.success is False
        assert result.error_code == ErrorCode.PROCESSING_ERROR

    def test_parse_failure_keeps_raw_body(self):
        normalizer = ResponseNormalizer(_json_profile())
        result = normalizer.normalize("<html>Bad Gateway</html>", TransactionAction.PURCHASE, status_code=502, amount=500)

        assert result.success is False
        assert result.error_code == ErrorCode.PARSE_ERROR
        assert result.message == "Invalid response received from the Acme API."
        assert result.raw["unparsed_body"] == "<html>Bad Gateway</html>"
        assert result.raw["status_code"] == 502
        assert result.amount == 500

    def test_reshape_failure_is_a_parse_failure(self):
        def reshape(fields):
            raise ValueError("no API fields")

        normalizer = ResponseNormalizer(_json_profile(reshape=reshape))
        result = normalizer.normalize('{"status": "approved"}', TransactionAction.PURCHASE)
        assert result.error_code == ErrorCode.PARSE_ERROR
        assert "no API fields" in result.raw["parse_error"]

    def test_token_field_with_delimiter_leaves_authorization_empty(self):
        normalizer = ResponseNormalizer(_json_profile())
        result = normalizer.normalize(
            '{"status": "approved", "id": "TXN;123", "last4": "4242"}', TransactionAction.AUTHORIZE
        )
        assert result.success is True
        assert result.authorization is None
        assert result.raw["id"] == "TXN;123"

    def test_unknown_avs_code_is_unsupported(self):
        normalizer = ResponseNormalizer(_json_profile())
        result = normalizer.normalize('{"status": "approved", "avs": "Q", "cvv": ""}', TransactionAction.AUTHORIZE)
        assert result.avs_result == VerificationResult.UNSUPPORTED
        assert result.cvv_result == VerificationResult.NOT_CHECKED

    def test_custom_message_extractor_wins(self):
        profile = _json_profile(extract_message=lambda fields, success: "custom" if success else None)
        normalizer = ResponseNormalizer(profile)
        assert normalizer.normalize('{"status": "approved", "message": "x"}', TransactionAction.AUTHORIZE).message == "custom"
        assert normalizer.normalize('{"status": "declined", "message": "x"}', TransactionAction.AUTHORIZE).message == "x"

    def test_interpret_flat_fields(self):
        normalizer = ResponseNormalizer(_json_profile())
        result = normalizer.interpret({"status": "approved", "id": "ch_1"}, TransactionAction.CAPTURE)
        assert result.success is True
        assert result.authorization == "ch_1"

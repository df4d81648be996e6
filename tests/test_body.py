from canva_relay.body import MalformedBody, ParsedBody, negotiate_body


class TestNegotiateBody:

    def test_json_object(self):
        result = negotiate_body("application/json; charset=utf-8", b'{"grant_type": "authorization_code"}')
        assert result == ParsedBody({"grant_type": "authorization_code"})

    def test_form_encoded(self):
        result = negotiate_body("application/x-www-form-urlencoded", b"grant_type=refresh_token&refresh_token=a%2Bb")
        assert result == ParsedBody({"grant_type": "refresh_token", "refresh_token": "a+b"})

    def test_empty_body_is_empty_not_malformed(self):
        assert negotiate_body("application/json", b"") == ParsedBody()
        assert negotiate_body(None, b"   ") == ParsedBody()

    def test_malformed_json(self):
        assert isinstance(negotiate_body("application/json", b"{oops"), MalformedBody)

    def test_json_must_be_an_object(self):
        result = negotiate_body("application/json", b'["grant_type"]')
        assert isinstance(result, MalformedBody)
        assert "object" in result.reason

    def test_unknown_content_type_tried_as_json(self):
        assert negotiate_body("text/plain", b'{"code": "c"}') == ParsedBody({"code": "c"})
        assert isinstance(negotiate_body("text/plain", b"code=c"), MalformedBody)

    def test_text_ignores_non_string_and_empty_values(self):
        body = ParsedBody({"code": 42, "state": "", "grant_type": "authorization_code"})
        assert body.text("code") is None
        assert body.text("state") is None
        assert body.text("missing") is None
        assert body.text("grant_type") == "authorization_code"

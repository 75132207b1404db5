from harvest.auth import sign_payload, verify_signature


def test_signature_roundtrip():
    body = b'{"action": "queued"}'
    signature = sign_payload("secret", body)
    assert signature.startswith("sha256=")
    assert verify_signature("secret", body, signature)


def test_signature_rejected_for_wrong_secret_or_body():
    body = b'{"action": "queued"}'
    signature = sign_payload("secret", body)
    assert not verify_signature("other", body, signature)
    assert not verify_signature("secret", b"{}", signature)


def test_missing_or_malformed_signature_rejected():
    body = b"{}"
    digest = sign_payload("secret", body).removeprefix("sha256=")
    assert not verify_signature("secret", body, None)
    assert not verify_signature("secret", body, "")
    assert not verify_signature("secret", body, digest)
    assert not verify_signature("secret", body, f"sha1={digest}")

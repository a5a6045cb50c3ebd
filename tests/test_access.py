import unittest

from uploadpath.access import PrivateAccessGate, UserTokenCodec, bearer_token
from uploadpath.errors import AccessDenied
from uploadpath.signing import sign_private_url

SECRET = "url-secret"
NOW = 1_700_000_000
PRIVATE_PATH = "/uploads/private/doc-7/report_ab12.pdf"

USERS = {
    1: {"id": 1, "username": "ana", "document_id": "doc-7"},
    2: {"id": 2, "username": "bo", "document_id": "doc-9"},
}


def make_gate(**overrides):
    options = {
        "mount": "uploads",
        "private_folder": "private",
        "secret": SECRET,
        "owner_field": "document_id",
        "privileged_verifier": lambda token: token == "admin-token",
        "owner_verifier": lambda token: {"id": int(token.split("-")[1])} if token.startswith("user-") else None,
        "user_lookup": USERS.get,
        "clock": lambda: NOW,
    }
    options.update(overrides)
    return PrivateAccessGate(**options)


class BearerTokenTests(unittest.TestCase):
    def test_parses_case_insensitive_scheme(self):
        self.assertEqual(bearer_token("Bearer abc"), "abc")
        self.assertEqual(bearer_token("bearer  abc "), "abc")
        self.assertEqual(bearer_token("Basic abc"), "")
        self.assertEqual(bearer_token(None), "")


class UserTokenCodecTests(unittest.TestCase):
    def test_issue_and_decode(self):
        codec = UserTokenCodec("key")
        self.assertEqual(codec.decode(codec.issue(5)), {"id": 5})

    def test_tampered_or_foreign_token_rejected(self):
        codec = UserTokenCodec("key")
        self.assertIsNone(codec.decode(codec.issue(5) + "x"))
        self.assertIsNone(codec.decode(UserTokenCodec("other").issue(5)))
        self.assertIsNone(codec.decode("not-a-token"))


class PrivateAccessGateTests(unittest.TestCase):
    def test_public_paths_are_not_gated(self):
        gate = make_gate()
        self.assertFalse(gate.applies_to("/uploads/photos/a.png"))
        self.assertFalse(gate.applies_to("/uploads/privateer/a.png"))
        gate.authorize("/uploads/photos/a.png", None, {})

    def test_owner_segment(self):
        self.assertEqual(make_gate().owner_segment(PRIVATE_PATH), "doc-7")
        self.assertEqual(make_gate().owner_segment("/uploads/private/"), "")

    def test_prefixed_private_folder_is_gated(self):
        gate = make_gate(prefix="/pfx/")
        self.assertTrue(gate.applies_to("/uploads/pfx/private/doc-7/a.pdf"))
        self.assertEqual(gate.owner_segment("/uploads/pfx/private/doc-7/a.pdf"), "doc-7")
        self.assertTrue(gate.applies_to("/uploads/private/doc-7/a.pdf"))
        self.assertFalse(gate.applies_to("/uploads/pfx/public/a.pdf"))
        self.assertTrue(gate.is_allowed("/uploads/pfx/private/doc-7/a.pdf", "Bearer user-1", {}))
        with self.assertRaises(AccessDenied):
            gate.authorize("/uploads/pfx/private/doc-7/a.pdf", None, {})

    def test_anonymous_denied(self):
        with self.assertRaises(AccessDenied) as caught:
            make_gate().authorize(PRIVATE_PATH, None, {})
        self.assertEqual(int(caught.exception.status), 403)

    def test_privileged_token_allowed(self):
        self.assertTrue(make_gate().is_allowed(PRIVATE_PATH, "Bearer admin-token", {}))

    def test_owner_allowed_other_user_denied(self):
        gate = make_gate()
        self.assertTrue(gate.is_allowed(PRIVATE_PATH, "Bearer user-1", {}))
        self.assertFalse(gate.is_allowed(PRIVATE_PATH, "Bearer user-2", {}))

    def test_owner_field_falls_back_to_id(self):
        gate = make_gate(owner_field="missing_field")
        self.assertTrue(gate.is_allowed("/uploads/private/2/file.pdf", "Bearer user-2", {}))

    def test_signed_url_allowed_until_expiry(self):
        expires = NOW + 60
        token = sign_private_url(SECRET, PRIVATE_PATH, expires)
        gate = make_gate()
        self.assertTrue(gate.is_allowed(PRIVATE_PATH, None, {"token": token, "expires": str(expires)}))

        expired = make_gate(clock=lambda: expires)
        self.assertFalse(expired.is_allowed(PRIVATE_PATH, None, {"token": token, "expires": str(expires)}))

    def test_signed_url_bound_to_path(self):
        expires = NOW + 60
        token = sign_private_url(SECRET, PRIVATE_PATH, expires)
        other = "/uploads/private/doc-7/other.pdf"
        self.assertFalse(make_gate().is_allowed(other, None, {"token": token, "expires": str(expires)}))

    def test_signed_url_needs_secret(self):
        expires = NOW + 60
        token = sign_private_url(SECRET, PRIVATE_PATH, expires)
        gate = make_gate(secret="")
        self.assertFalse(gate.is_allowed(PRIVATE_PATH, None, {"token": token, "expires": str(expires)}))

    def test_malformed_expiry_denied(self):
        gate = make_gate()
        self.assertFalse(gate.is_allowed(PRIVATE_PATH, None, {"token": "abc", "expires": "soon"}))

    def test_raising_verifier_falls_through_to_next_check(self):
        def exploding(token):
            raise RuntimeError("verifier down")

        expires = NOW + 60
        token = sign_private_url(SECRET, PRIVATE_PATH, expires)
        gate = make_gate(privileged_verifier=exploding, owner_verifier=exploding)
        self.assertTrue(
            gate.is_allowed(PRIVATE_PATH, "Bearer whatever", {"token": token, "expires": str(expires)})
        )
        self.assertFalse(gate.is_allowed(PRIVATE_PATH, "Bearer whatever", {}))

    def test_first_success_short_circuits(self):
        calls = []

        def privileged(token):
            calls.append("privileged")
            return True

        def owner(token):
            calls.append("owner")
            return {"id": 1}

        gate = make_gate(privileged_verifier=privileged, owner_verifier=owner)
        self.assertTrue(gate.is_allowed(PRIVATE_PATH, "Bearer t", {}))
        self.assertEqual(calls, ["privileged"])


if __name__ == "__main__":
    unittest.main()

import re
import unittest
from urllib.parse import parse_qsl, unquote, urlparse

from uploadpath import signing

SECRET = "s3cret-value"


class SignedUrlTokenTests(unittest.TestCase):
    def test_token_is_unpadded_base64url(self):
        token = signing.sign_private_url(SECRET, "/uploads/private/7/a.pdf", 1_700_000_060)
        self.assertRegex(token, r"^[A-Za-z0-9_-]+$")
        self.assertEqual(len(token), 43)

    def test_verify_accepts_matching_token(self):
        token = signing.sign_private_url(SECRET, "/uploads/private/7/a.pdf", 1_700_000_060)
        self.assertTrue(
            signing.verify_private_url_token(SECRET, "/uploads/private/7/a.pdf", 1_700_000_060, token)
        )

    def test_token_bound_to_path_and_expiry(self):
        token = signing.sign_private_url(SECRET, "/uploads/private/7/a.pdf", 1_700_000_060)
        self.assertFalse(
            signing.verify_private_url_token(SECRET, "/uploads/private/8/a.pdf", 1_700_000_060, token)
        )
        self.assertFalse(
            signing.verify_private_url_token(SECRET, "/uploads/private/7/a.pdf", 1_700_000_061, token)
        )
        self.assertFalse(
            signing.verify_private_url_token("other", "/uploads/private/7/a.pdf", 1_700_000_060, token)
        )

    def test_empty_secret_or_token_never_verifies(self):
        self.assertFalse(signing.verify_private_url_token("", "/p", 1, "abc"))
        self.assertFalse(signing.verify_private_url_token(SECRET, "/p", 1, ""))
        self.assertFalse(signing.verify_private_url_token(SECRET, "/p", 1, None))

    def test_garbage_token_rejected(self):
        self.assertFalse(signing.verify_private_url_token(SECRET, "/p", 1, "!!not base64!!"))


class BuildSignedUrlTests(unittest.TestCase):
    def test_appends_token_and_expiry(self):
        url = signing.build_signed_url(SECRET, "/uploads/private/7/a.pdf", ttl=60, now=1000)
        parsed = urlparse(url)
        query = dict(parse_qsl(parsed.query))
        self.assertEqual(parsed.path, "/uploads/private/7/a.pdf")
        self.assertEqual(query["expires"], "1060")
        self.assertTrue(
            signing.verify_private_url_token(SECRET, parsed.path, 1060, unquote(query["token"]))
        )

    def test_existing_query_string_is_replaced(self):
        url = signing.build_signed_url(SECRET, "/uploads/private/7/a.pdf?token=old&expires=1", now=0)
        self.assertEqual(url.count("?"), 1)
        self.assertNotIn("token=old", url)

    def test_absolute_url_signs_path_only(self):
        url = signing.build_signed_url(SECRET, "https://cdn.example.com/uploads/private/7/a.pdf", now=0)
        self.assertTrue(url.startswith("https://cdn.example.com/uploads/private/7/a.pdf?"))
        token = re.search(r"token=([^&]+)", url).group(1)
        self.assertTrue(
            signing.verify_private_url_token(SECRET, "/uploads/private/7/a.pdf", 60, unquote(token))
        )

    def test_ttl_has_one_second_minimum(self):
        url = signing.build_signed_url(SECRET, "/uploads/private/a.pdf", ttl=0, now=500)
        self.assertIn("expires=501", url)


if __name__ == "__main__":
    unittest.main()

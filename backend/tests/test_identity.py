import unittest


from app.core.identity import compute_pass_id, explicit_pass_id, resolve_pass_id


class TestPassIdResolution(unittest.TestCase):
    def test_shopify_id_wins(self):
        pid = compute_pass_id(shopify_customer_id=" 123 ", user_id="u1", email="a@b.co")
        self.assertEqual(pid, "pass:shopify:123")

    def test_anonymous_shopify_id_is_ignored(self):
        pid = compute_pass_id(shopify_customer_id="anonymous", user_id="u1")
        self.assertEqual(pid, "pass:user:u1")

    def test_email_is_normalized(self):
        pid = compute_pass_id(email="  Someone@Example.COM ", hash_email=False)
        self.assertEqual(pid, "pass:email:someone@example.com")

    def test_email_can_be_hashed(self):
        pid = compute_pass_id(email="someone@example.com", hash_email=True)
        self.assertTrue(pid.startswith("pass:email:"))
        self.assertEqual(len(pid.split(":")[-1]), 40)
        self.assertNotIn("@", pid)

    def test_anonymous_fallback_is_unique(self):
        a = compute_pass_id()
        b = compute_pass_id()
        self.assertTrue(a.startswith("pass:anon:"))
        self.assertNotEqual(a, b)

    def test_explicit_body_id_beats_header(self):
        body = {"passId": "pass:user:body"}
        headers = {"X-Mina-Pass-Id": "pass:user:header"}
        self.assertEqual(resolve_pass_id(body, headers), "pass:user:body")

    def test_header_used_when_body_has_no_id(self):
        headers = {"X-Mina-Pass-Id": "pass:user:header"}
        self.assertEqual(resolve_pass_id({"user_id": "u1"}, headers), "pass:user:header")

    def test_hints_used_without_explicit_id(self):
        self.assertEqual(resolve_pass_id({"customer_id": "77"}), "pass:shopify:77")
        self.assertEqual(explicit_pass_id({"customer_id": "77"}), "")


if __name__ == "__main__":
    unittest.main()

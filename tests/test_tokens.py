import hashlib

from baluster.service.tokens import TOKEN_BYTES, generate_token, hash_token


class TestTokenGeneration:
    def test_tokens_are_unique_and_url_safe(self):
        tokens = {generate_token() for _ in range(10_000)}
        assert len(tokens) == 10_000
        for token in tokens:
            assert set(token) <= set(
                "ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789-_"
            )

    def test_token_carries_32_bytes_of_entropy(self):
        # token_urlsafe(32) yields 43 characters without padding
        assert TOKEN_BYTES == 32
        assert len(generate_token()) == 43


class TestTokenHashing:
    def test_hash_is_sha256_hex(self):
        assert hash_token("secret") == hashlib.sha256(b"secret").hexdigest()

    def test_hash_is_deterministic_and_not_the_input(self):
        token = generate_token()
        assert hash_token(token) == hash_token(token)
        assert hash_token(token) != token
        assert len(hash_token(token)) == 64

    def test_distinct_inputs_hash_differently(self):
        assert hash_token("a") != hash_token("b")

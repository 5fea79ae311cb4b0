"""Tests for global configuration module."""

import os
import unittest
from unittest.mock import patch

from enrollgate._config import (
    DEFAULT_BASE_URL,
    ENROLLGATE,
    AuthConfig,
    ConfigEntry,
    ConfigEnvVarError,
    ConfigValidationError,
    EnrollGateConfig,
    RateLimitConfig,
    StoreConfig,
    UpstreamConfig,
)


class TestDefaults(unittest.TestCase):
    """Tests for default configuration values."""

    def setUp(self):
        ENROLLGATE.reset()

    def tearDown(self):
        ENROLLGATE.reset()

    def test_auth_defaults(self):
        auth = ENROLLGATE.config.auth
        self.assertIsNone(auth.access_token)
        self.assertEqual(auth.base_url, DEFAULT_BASE_URL)
        self.assertEqual(auth.token_path, "/auth/token")
        self.assertEqual(auth.request_timeout, 10.0)
        self.assertEqual(auth.safety_margin, 300.0)
        self.assertFalse(auth.has_credentials())

    def test_upstream_defaults(self):
        upstream = ENROLLGATE.config.upstream
        self.assertEqual(upstream.base_url, "https://fsh-developer.jacad.com.br/api/v1")
        self.assertEqual(upstream.search_path, "/controle-acesso/matriculas-entrada-saida")
        self.assertEqual(upstream.request_timeout, 15.0)
        self.assertEqual(upstream.page_size, 500)
        self.assertEqual(upstream.max_search_term_length, 100)

    def test_rate_limit_defaults(self):
        rate_limit = ENROLLGATE.config.rate_limit
        self.assertEqual(rate_limit.strategy, "fixed_window")
        self.assertEqual(rate_limit.technical_max_requests, 10)
        self.assertEqual(rate_limit.technical_time_window, 1.0)
        self.assertEqual(rate_limit.business_max_requests, 1000)
        self.assertEqual(rate_limit.business_time_window, 3600.0)

    def test_store_defaults(self):
        self.assertEqual(ENROLLGATE.config.store.backend, "memory")
        self.assertIsNone(ENROLLGATE.config.store.redis_url)


class TestConfigure(unittest.TestCase):
    """Tests for ENROLLGATE.configure() method."""

    def setUp(self):
        ENROLLGATE.reset()

    def tearDown(self):
        ENROLLGATE.reset()

    def test_configure_sections(self):
        ENROLLGATE.configure(
            auth={"access_token": "static-credential"},
            upstream={"request_timeout": 5.0},
            rate_limit={"technical_max_requests": 20},
            store={"backend": "redis", "redis_url": "redis://localhost:6379/0"},
        )

        self.assertEqual(ENROLLGATE.config.auth.access_token, "static-credential")
        self.assertEqual(ENROLLGATE.config.upstream.request_timeout, 5.0)
        self.assertEqual(ENROLLGATE.config.rate_limit.technical_max_requests, 20)
        self.assertEqual(ENROLLGATE.config.store.backend, "redis")

    def test_configure_returns_config(self):
        result = ENROLLGATE.configure(auth={"access_token": "x"})
        self.assertIsInstance(result, EnrollGateConfig)
        self.assertIs(result, ENROLLGATE.config)

    def test_configure_is_not_cumulative(self):
        ENROLLGATE.configure(upstream={"page_size": 50})
        ENROLLGATE.configure(rate_limit={"business_max_requests": 10})

        self.assertEqual(ENROLLGATE.config.upstream.page_size, 500)

    def test_configure_unknown_field_raises(self):
        with self.assertRaises(ValueError):
            ENROLLGATE.configure(auth={"acess_token": "typo"})

    def test_configure_invalid_value_raises(self):
        with self.assertRaises(ConfigValidationError):
            ENROLLGATE.configure(rate_limit={"technical_max_requests": 0})

    def test_redis_backend_requires_url(self):
        with self.assertRaises(ConfigValidationError) as ctx:
            ENROLLGATE.configure(store={"backend": "redis"})
        self.assertIn("redis_url", str(ctx.exception))

    def test_lock_ttl_must_exceed_request_timeout(self):
        with self.assertRaises(ConfigValidationError):
            ENROLLGATE.configure(auth={"request_timeout": 20.0})

    def test_validation_error_masks_access_token(self):
        with self.assertRaises(ConfigValidationError) as ctx:
            AuthConfig(access_token="").validate()
        self.assertNotIn("''", str(ctx.exception))
        self.assertIn("********", str(ctx.exception))

    def test_repr_does_not_leak_access_token(self):
        ENROLLGATE.configure(auth={"access_token": "super-secret-credential"})
        self.assertNotIn("super-secret-credential", repr(ENROLLGATE))


class TestEnvVars(unittest.TestCase):
    """Tests for ENROLLGATE_* environment variables."""

    def setUp(self):
        ENROLLGATE.reset()

    def tearDown(self):
        ENROLLGATE.reset()

    @patch.dict(os.environ, {"ENROLLGATE_AUTH_ACCESS_TOKEN": "env-credential"})
    def test_access_token_from_env(self):
        ENROLLGATE.reset()
        self.assertEqual(ENROLLGATE.config.auth.access_token, "env-credential")
        self.assertTrue(ENROLLGATE.config.auth.has_credentials())

    @patch.dict(os.environ, {"ENROLLGATE_RATE_LIMIT_TECHNICAL_MAX_REQUESTS": "25"})
    def test_int_conversion(self):
        ENROLLGATE.reset()
        self.assertEqual(ENROLLGATE.config.rate_limit.technical_max_requests, 25)

    @patch.dict(os.environ, {"ENROLLGATE_AUTH_SAFETY_MARGIN": "120.5"})
    def test_float_conversion(self):
        ENROLLGATE.reset()
        self.assertEqual(ENROLLGATE.config.auth.safety_margin, 120.5)

    @patch.dict(os.environ, {"ENROLLGATE_STORE_BACKEND": "redis", "ENROLLGATE_STORE_REDIS_URL": "redis://r:6379/0"})
    def test_store_from_env(self):
        ENROLLGATE.reset()
        self.assertEqual(ENROLLGATE.config.store.backend, "redis")
        self.assertEqual(ENROLLGATE.config.store.redis_url, "redis://r:6379/0")

    @patch.dict(os.environ, {"ENROLLGATE_UPSTREAM_PAGE_SIZE": "lots"})
    def test_invalid_env_value_raises(self):
        with self.assertRaises(ConfigEnvVarError) as ctx:
            ENROLLGATE.reset()
        self.assertEqual(ctx.exception.env_var, "ENROLLGATE_UPSTREAM_PAGE_SIZE")

    @patch.dict(os.environ, {"ENROLLGATE_UPSTREAM_REQUEST_TIMEOUT": "45"})
    def test_configure_overrides_env_vars(self):
        ENROLLGATE.configure(upstream={"request_timeout": 60.0})
        self.assertEqual(ENROLLGATE.config.upstream.request_timeout, 60.0)

    @patch.dict(os.environ, {"ENROLLGATE_UPSTREAM_REQUEST_TIMEOUT": "45"})
    def test_env_vars_used_as_fallback(self):
        ENROLLGATE.configure(upstream={"page_size": 100})
        self.assertEqual(ENROLLGATE.config.upstream.request_timeout, 45.0)

    @patch.dict(os.environ, {"ENROLLGATE_UPSTREAM_REQUEST_TIMEOUT": "45"})
    def test_configure_without_env_override(self):
        ENROLLGATE.configure(upstream={"page_size": 100}, allow_env_override=False)
        self.assertEqual(ENROLLGATE.config.upstream.request_timeout, 15.0)


class TestWithOverrides(unittest.TestCase):
    """Tests for OverridableConfig.with_overrides()."""

    def test_returns_new_instance(self):
        original = UpstreamConfig()
        updated = original.with_overrides({"page_size": 10})

        self.assertIsNot(original, updated)
        self.assertEqual(original.page_size, 500)
        self.assertEqual(updated.page_size, 10)

    def test_none_values_ignored(self):
        updated = RateLimitConfig().with_overrides({"technical_max_requests": None})
        self.assertEqual(updated.technical_max_requests, 10)

    def test_empty_dict_returns_same_instance(self):
        config = StoreConfig()
        self.assertIs(config.with_overrides({}), config)

    def test_invalid_field_raises(self):
        with self.assertRaises(ValueError) as ctx:
            StoreConfig().with_overrides({"redis": "redis://x"})
        self.assertIn("Unknown config fields", str(ctx.exception))

    def test_sections_are_frozen(self):
        config = AuthConfig()
        with self.assertRaises(AttributeError):
            config.safety_margin = 0  # type: ignore


class TestExplain(unittest.TestCase):
    """Tests for ENROLLGATE.explain() and config sources."""

    def setUp(self):
        ENROLLGATE.reset()

    def tearDown(self):
        ENROLLGATE.reset()

    @patch.dict(os.environ, {"ENROLLGATE_UPSTREAM_PAGE_SIZE": "100"})
    def test_sources_are_tracked(self):
        ENROLLGATE.configure(auth={"access_token": "static-credential"})
        data = ENROLLGATE.config.explain_data()

        sources = {e.name: e.source for e in data["auth"]}
        self.assertEqual(sources["access_token"], "configure")
        self.assertEqual(sources["safety_margin"], "default")

        upstream_sources = {e.name: e.source for e in data["upstream"]}
        self.assertEqual(upstream_sources["page_size"], "env:ENROLLGATE_UPSTREAM_PAGE_SIZE")

    def test_explain_masks_access_token(self):
        ENROLLGATE.configure(auth={"access_token": "super-secret-credential"})
        lines: list[str] = []

        ENROLLGATE.explain(output=lines.append)

        output = "\n".join(lines)
        self.assertIn("[auth]", output)
        self.assertIn("[rate_limit]", output)
        self.assertNotIn("super-secret-credential", output)
        self.assertIn("supe********tial", output)


class TestConfigEntry(unittest.TestCase):
    """Tests for ConfigEntry.formatted_value."""

    def test_short_secret_fully_masked(self):
        self.assertEqual(ConfigEntry("access_token", "short", "configure").formatted_value, "********")

    def test_none_value(self):
        self.assertEqual(ConfigEntry("redis_url", None, "default").formatted_value, "None")

    def test_long_value_truncated(self):
        entry = ConfigEntry("base_url", "https://" + "a" * 80, "configure")
        self.assertEqual(len(entry.formatted_value), 50)
        self.assertTrue(entry.formatted_value.endswith("..."))


if __name__ == "__main__":
    unittest.main()

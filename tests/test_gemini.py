"""Tests for concord.models.gemini module."""
import unittest
from unittest.mock import patch, MagicMock

from concord.errors import ModelUnavailableError
from concord.models.gemini import GeminiAdapter


def _mock_client(mock_client_cls, response):
    mock_client = MagicMock()
    mock_client.__enter__ = MagicMock(return_value=mock_client)
    mock_client.__exit__ = MagicMock(return_value=False)
    mock_client.post.return_value = response
    mock_client_cls.return_value = mock_client
    return mock_client


class TestGeminiAdapter(unittest.TestCase):
    def test_no_api_key_returns_error(self):
        adapter = GeminiAdapter(api_key="")
        result = adapter.generate("Hello")
        self.assertFalse(result.ok)
        self.assertIn("GEMINI_API_KEY", result.error)

    def test_availability_follows_api_key(self):
        self.assertTrue(GeminiAdapter(api_key="test-key").is_available())
        self.assertFalse(GeminiAdapter(api_key="").is_available())

    @patch("concord.models.gemini.httpx.Client")
    def test_successful_generation(self, mock_client_cls):
        mock_response = MagicMock()
        mock_response.status_code = 200
        mock_response.json.return_value = {
            "candidates": [{"content": {"parts": [{"text": "Hello "}, {"text": "there!"}]}}],
            "usageMetadata": {
                "promptTokenCount": 5,
                "candidatesTokenCount": 3,
                "totalTokenCount": 8,
            },
        }
        _mock_client(mock_client_cls, mock_response)

        adapter = GeminiAdapter(api_key="test-key")
        result = adapter.generate("Say hello")

        self.assertTrue(result.ok)
        self.assertEqual(result.text, "Hello there!")
        self.assertEqual(result.usage["prompt_tokens"], 5)
        self.assertEqual(result.usage["completion_tokens"], 3)

    @patch("concord.models.gemini.httpx.Client")
    def test_call_returns_text(self, mock_client_cls):
        mock_response = MagicMock()
        mock_response.status_code = 200
        mock_response.json.return_value = {"candidates": [{"content": {"parts": [{"text": "ok"}]}}]}
        mock_client = _mock_client(mock_client_cls, mock_response)

        adapter = GeminiAdapter(api_key="test-key", model="2.5-pro", system="be brief")
        self.assertEqual(adapter.call("ping"), "ok")

        url = mock_client.post.call_args[0][0]
        body = mock_client.post.call_args[1]["json"]
        self.assertIn("gemini-2.5-pro", url)
        self.assertEqual(body["systemInstruction"]["parts"][0]["text"], "be brief")

    @patch("concord.models.gemini.httpx.Client")
    def test_http_error_raises_unavailable(self, mock_client_cls):
        mock_response = MagicMock()
        mock_response.status_code = 401
        mock_response.text = "Unauthorized"
        _mock_client(mock_client_cls, mock_response)

        adapter = GeminiAdapter(model_id="gem", api_key="bad-key")
        result = adapter.generate("test")
        self.assertFalse(result.ok)
        self.assertIn("401", result.error)

        with self.assertRaises(ModelUnavailableError) as ctx:
            adapter.call("test")
        self.assertEqual(ctx.exception.model_id, "gem")

    @patch("concord.models.gemini.httpx.Client")
    def test_no_candidates(self, mock_client_cls):
        mock_response = MagicMock()
        mock_response.status_code = 200
        mock_response.json.return_value = {"candidates": []}
        _mock_client(mock_client_cls, mock_response)

        result = GeminiAdapter(api_key="test-key").generate("test")
        self.assertFalse(result.ok)
        self.assertIn("No candidates", result.error)

    @patch("concord.models.gemini.httpx.Client")
    def test_timeout(self, mock_client_cls):
        import httpx
        mock_client = MagicMock()
        mock_client.__enter__ = MagicMock(return_value=mock_client)
        mock_client.__exit__ = MagicMock(return_value=False)
        mock_client.post.side_effect = httpx.TimeoutException("timed out")
        mock_client_cls.return_value = mock_client

        result = GeminiAdapter(api_key="test-key", timeout=5).generate("test")
        self.assertFalse(result.ok)
        self.assertIn("timeout", result.error)


if __name__ == "__main__":
    unittest.main()

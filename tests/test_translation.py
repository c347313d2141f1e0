"""
tests/test_translation.py
==========================
Translation Client Tests — OpenAI chat wrapper, cleanup, cache, debouncer

Test categories:
    1. Source cleanup and reply parsing
    2. Translation call (parameters, cache, coalescing, empty input)
    3. Error mapping
    4. Usage statistics
    5. Debouncer (last write wins, cancel, flush)
"""

import os
import sys
import threading
import time
import unittest
from unittest.mock import MagicMock, patch

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))
sys.path.insert(0, os.path.abspath(os.path.dirname(__file__)))

from helpers import APITimeoutError, FakeAPIError, RateLimitError, make_chat_response

from voicestream.cache import text_hash
from voicestream.config import StreamingConfig
from voicestream.errors import MissingCredentials, TranslationError
from voicestream.nlp.translator import (
    SOURCE_TAG,
    TRANSLATION_TAG,
    TranslationClient,
    TranslationDebouncer,
    TranslationStatus,
    build_system_prompt,
    clean_source_text,
    parse_formatted_translation,
)

_REPLY = f"{SOURCE_TAG} Hello everyone\n{TRANSLATION_TAG} 大家好"


def _openai_replying(content: str = _REPLY):
    openai = MagicMock()
    openai.chat.completions.create.return_value = make_chat_response(content)
    return openai


# ===================================================================
# 1. Source cleanup and reply parsing
# ===================================================================

class TestCleanSourceText(unittest.TestCase):

    def test_fillers_removed(self):
        cleaned = clean_source_text("Um, I think, uh, we should go.")
        self.assertNotIn("um", cleaned.lower().split())
        self.assertNotIn("uh", cleaned.lower())
        self.assertIn("we should go", cleaned)

    def test_looped_phrase_collapsed(self):
        self.assertEqual(clean_source_text("go home go home go home now"), "go home now")

    def test_repeated_sentence_dropped(self):
        self.assertEqual(
            clean_source_text("We start now. We start now. Then lunch."),
            "We start now. Then lunch.",
        )

    def test_filler_only_becomes_empty(self):
        self.assertEqual(clean_source_text("um uh"), "")


class TestParseFormattedTranslation(unittest.TestCase):

    def test_tagged_reply(self):
        self.assertEqual(parse_formatted_translation(_REPLY), ("Hello everyone", "大家好"))

    def test_multiline_translation(self):
        reply = f"{SOURCE_TAG} One. Two.\n{TRANSLATION_TAG} 一。\n二。"
        _, translation = parse_formatted_translation(reply)
        self.assertEqual(translation, "一。\n二。")

    def test_untagged_reply_falls_back_to_whole_text(self):
        self.assertEqual(parse_formatted_translation("  大家好  "), ("", "大家好"))

    def test_system_prompt_names_languages(self):
        prompt = build_system_prompt("en", "zh")
        self.assertIn("English", prompt)
        self.assertIn("Chinese", prompt)
        self.assertIn(TRANSLATION_TAG, prompt)


# ===================================================================
# 2. Translation call
# ===================================================================

class TestTranslationClient(unittest.TestCase):

    def setUp(self):
        self.openai = _openai_replying()
        self.client = TranslationClient(client=self.openai, config=StreamingConfig())

    def test_success(self):
        result = self.client.translate("Hello everyone", "en", "zh")
        self.assertEqual(result.status, TranslationStatus.SUCCESS)
        self.assertEqual(result.translated_text, "大家好")
        self.assertEqual(result.source_text, "Hello everyone")

    def test_request_parameters(self):
        self.client.translate("Hello everyone")
        kwargs = self.openai.chat.completions.create.call_args.kwargs
        self.assertEqual(kwargs["model"], "gpt-4o-mini")
        self.assertEqual(kwargs["temperature"], 0.1)
        self.assertEqual(kwargs["max_tokens"], 800)
        self.assertEqual(kwargs["presence_penalty"], 0.3)
        self.assertEqual(kwargs["frequency_penalty"], 0.5)
        self.assertEqual(kwargs["messages"][0]["role"], "system")
        self.assertIn("Hello everyone", kwargs["messages"][1]["content"])

    def test_repeat_is_served_from_cache(self):
        self.client.translate("Hello everyone", "en", "zh")
        result = self.client.translate("hello   everyone", "en", "zh")
        self.assertEqual(result.status, TranslationStatus.CACHED)
        self.assertEqual(result.translated_text, "大家好")
        self.openai.chat.completions.create.assert_called_once()

    def test_language_pair_is_part_of_cache_key(self):
        self.client.translate("Hello everyone", "en", "zh")
        self.client.translate("Hello everyone", "en", "ja")
        self.assertEqual(self.openai.chat.completions.create.call_count, 2)

    def test_in_flight_request_is_coalesced(self):
        self.client._in_flight.claim(text_hash("Hello everyone", "en", "zh"))
        result = self.client.translate("Hello everyone", "en", "zh")
        self.assertEqual(result.status, TranslationStatus.DUPLICATE)
        self.openai.chat.completions.create.assert_not_called()

    def test_empty_input_makes_no_call(self):
        self.assertEqual(self.client.translate("").status, TranslationStatus.EMPTY)
        self.assertEqual(self.client.translate("   ").status, TranslationStatus.EMPTY)
        self.assertEqual(self.client.translate("um uh").status, TranslationStatus.EMPTY)
        self.openai.chat.completions.create.assert_not_called()

    def test_untagged_reply_is_used_whole(self):
        client = TranslationClient(client=_openai_replying("大家好"))
        self.assertEqual(client.translate("Hello everyone").translated_text, "大家好")

    def test_clear_cache(self):
        self.client.translate("Hello everyone")
        self.client.clear_cache()
        self.client.translate("Hello everyone")
        self.assertEqual(self.openai.chat.completions.create.call_count, 2)

    def test_missing_api_key_raises(self):
        with patch.dict(os.environ, {}, clear=True):
            with self.assertRaises(MissingCredentials):
                TranslationClient().translate("Hello everyone")


# ===================================================================
# 3. Error mapping
# ===================================================================

class TestTranslationErrors(unittest.TestCase):

    def _translate_raising(self, exc):
        openai = MagicMock()
        openai.chat.completions.create.side_effect = exc
        client = TranslationClient(client=openai)
        with self.assertRaises(TranslationError) as ctx:
            client.translate("Hello everyone")
        return ctx.exception, openai, client

    def test_timeout(self):
        err, _, _ = self._translate_raising(APITimeoutError("timed out"))
        self.assertEqual(err.reason, "timeout")

    def test_rate_limited(self):
        err, openai, _ = self._translate_raising(RateLimitError())
        self.assertEqual(err.reason, "rate_limited")
        self.assertEqual(err.status_code, 429)
        openai.chat.completions.create.assert_called_once()

    def test_auth_rejected(self):
        err, _, _ = self._translate_raising(FakeAPIError("Invalid API key", status_code=401))
        self.assertEqual(err.reason, "rejected")
        self.assertEqual(err.status_code, 401)

    @patch("voicestream.openai_retry.time.sleep")
    def test_server_error_after_retries(self, _sleep):
        err, openai, _ = self._translate_raising(FakeAPIError("Internal error", status_code=500))
        self.assertEqual(err.reason, "failed")
        self.assertEqual(openai.chat.completions.create.call_count, 3)

    def test_failure_releases_in_flight_key(self):
        _, openai, client = self._translate_raising(RateLimitError())
        openai.chat.completions.create.side_effect = None
        openai.chat.completions.create.return_value = make_chat_response(_REPLY)
        self.assertEqual(client.translate("Hello everyone").status, TranslationStatus.SUCCESS)


# ===================================================================
# 4. Usage statistics
# ===================================================================

class TestUsageStats(unittest.TestCase):

    def test_usage_accumulates_and_resets(self):
        client = TranslationClient(client=_openai_replying())
        client.translate("Hello everyone")
        client.translate("Good morning")

        stats = client.get_usage_stats()
        self.assertEqual(stats["tokens_used"], 240)
        self.assertEqual(stats["requests_count"], 2)
        self.assertAlmostEqual(stats["cost_estimate"], 2 * (100 * 0.15 + 20 * 0.60) / 1_000_000)

        client.reset_usage_stats()
        self.assertEqual(client.get_usage_stats()["requests_count"], 0)

    def test_cache_hits_do_not_count(self):
        client = TranslationClient(client=_openai_replying())
        client.translate("Hello everyone")
        client.translate("Hello everyone")
        self.assertEqual(client.get_usage_stats()["requests_count"], 1)


# ===================================================================
# 5. Debouncer
# ===================================================================

class TestTranslationDebouncer(unittest.TestCase):

    def test_only_last_schedule_fires(self):
        calls = []
        fired = threading.Event()

        def callback():
            calls.append(1)
            fired.set()

        debouncer = TranslationDebouncer(0.05, callback)
        for _ in range(5):
            debouncer.schedule()
        self.assertTrue(fired.wait(2.0))
        time.sleep(0.15)
        self.assertEqual(len(calls), 1)
        self.assertFalse(debouncer.pending)

    def test_cancel_prevents_callback(self):
        callback = MagicMock()
        debouncer = TranslationDebouncer(0.05, callback)
        debouncer.schedule()
        debouncer.cancel()
        time.sleep(0.15)
        callback.assert_not_called()

    def test_flush_runs_pending_immediately(self):
        callback = MagicMock()
        debouncer = TranslationDebouncer(30.0, callback)
        debouncer.schedule()
        self.assertTrue(debouncer.pending)
        self.assertTrue(debouncer.flush())
        callback.assert_called_once()
        self.assertFalse(debouncer.flush())

    def test_callback_failure_is_contained(self):
        fired = threading.Event()

        def callback():
            fired.set()
            raise RuntimeError("boom")

        debouncer = TranslationDebouncer(0.01, callback)
        debouncer.schedule()
        self.assertTrue(fired.wait(2.0))


if __name__ == "__main__":
    unittest.main()

"""
tests/test_segmentation.py
===========================
Segmentation Engine Tests

Test categories:
    1. Seal conditions and their precedence
    2. Segment timing and ordering
    3. Translation attachment (stale results discarded)
    4. Finalize / clear / stats
    5. Text helpers (sentences, completeness, quality)
"""

import os
import sys
import unittest

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from voicestream.config import StreamingConfig
from voicestream.nlp.segmenter import (
    SegmentationEngine,
    analyze_text_quality,
    detect_sentences,
    estimate_lines,
    is_text_complete,
)


# ===================================================================
# 1. Seal conditions
# ===================================================================

class TestSealConditions(unittest.TestCase):

    def setUp(self):
        self.engine = SegmentationEngine(StreamingConfig(
            max_sentences_per_segment=3,
            max_segment_duration=60.0,
            max_lines_per_segment=3,
        ))

    def test_short_text_stays_pending(self):
        result = self.engine.process_update("Hello there.", None, 1.0)
        self.assertIsNone(result.new_segment)
        self.assertIsNone(result.seal_reason)
        self.assertEqual(result.buffer_snapshot.text, "Hello there.")
        self.assertEqual(result.buffer_snapshot.word_count, 2)

    def test_max_sentences(self):
        result = self.engine.process_update("One. Two. Three.", None, 1.0)
        self.assertEqual(result.seal_reason, "max_sentences")
        self.assertEqual(result.new_segment.text, "One. Two. Three.")
        self.assertTrue(result.buffer_snapshot.is_empty)

    def test_max_duration(self):
        self.engine.process_update("We begin", None, 0.0)
        result = self.engine.process_update("We begin and keep talking", None, 60.0)
        self.assertEqual(result.seal_reason, "max_duration")

    def test_sustained_silence(self):
        self.engine.process_update("A short remark", None, 1.0)
        result = self.engine.process_update("A short remark", None, 3.0, silence_detected=True)
        self.assertEqual(result.seal_reason, "silence")

    def test_requested_seal(self):
        result = self.engine.process_update("Some text", None, 1.0, seal_requested=True)
        self.assertEqual(result.seal_reason, "requested")

    def test_max_lines_requires_complete_sentence(self):
        long_fragment = "word " * 30  # 150 chars, three lines
        result = self.engine.process_update(long_fragment.strip(), None, 1.0)
        self.assertIsNone(result.new_segment)

        result = self.engine.process_update(long_fragment.strip() + ".", None, 2.0)
        self.assertEqual(result.seal_reason, "max_lines")

    def test_precedence(self):
        result = self.engine.process_update(
            "One. Two. Three.", None, 1.0, silence_detected=True, seal_requested=True,
        )
        self.assertEqual(result.seal_reason, "max_sentences")

        self.engine.process_update("Fresh start", None, 2.0)
        result = self.engine.process_update(
            "Fresh start", None, 3.0, silence_detected=True, seal_requested=True,
        )
        self.assertEqual(result.seal_reason, "silence")

    def test_empty_buffer_never_seals(self):
        result = self.engine.process_update("", None, 100.0, silence_detected=True)
        self.assertIsNone(result.new_segment)
        self.assertEqual(self.engine.get_all_segments(), [])


# ===================================================================
# 2. Timing and ordering
# ===================================================================

class TestSegmentTiming(unittest.TestCase):

    def setUp(self):
        self.engine = SegmentationEngine(StreamingConfig())

    def test_segment_spans_buffer_lifetime(self):
        self.engine.process_update("First words", None, 1.0)
        self.engine.process_update("First words and more", None, 3.0)
        segment = self.engine.process_update(
            "First words and more", None, 5.0, silence_detected=True,
        ).new_segment
        self.assertEqual(segment.start_time, 1.0)
        self.assertEqual(segment.end_time, 5.0)
        self.assertEqual(segment.duration, 4.0)
        self.assertFalse(segment.is_final)
        self.assertTrue(segment.id.startswith("segment-"))

    def test_segments_are_ordered_and_non_overlapping(self):
        for i, t in enumerate((1.0, 6.0, 11.0)):
            self.engine.process_update(f"Part {i}", None, t)
            self.engine.process_update(f"Part {i}", None, t + 3.0, seal_requested=True)

        segments = self.engine.get_all_segments()
        self.assertEqual(len(segments), 3)
        for earlier, later in zip(segments, segments[1:]):
            self.assertLessEqual(earlier.end_time, later.start_time)
        self.assertEqual(len({s.id for s in segments}), 3)

    def test_sealing_starts_new_generation(self):
        before = self.engine.process_update("Text", None, 1.0).buffer_snapshot.generation
        after = self.engine.process_update("Text", None, 2.0, seal_requested=True).buffer_snapshot
        self.assertEqual(after.generation, before + 1)
        self.assertTrue(after.is_empty)

    def test_completeness_flag(self):
        complete = self.engine.process_update("Done.", None, 1.0, seal_requested=True).new_segment
        partial = self.engine.process_update("Not done", None, 2.0, seal_requested=True).new_segment
        self.assertTrue(complete.is_complete)
        self.assertFalse(partial.is_complete)


# ===================================================================
# 3. Translation attachment
# ===================================================================

class TestTranslationAttachment(unittest.TestCase):

    def setUp(self):
        self.engine = SegmentationEngine(StreamingConfig())

    def test_inline_translation_carried_into_segment(self):
        self.engine.process_update("Hello everyone", "大家好", 1.0)
        segment = self.engine.process_update(
            "Hello everyone", None, 2.0, seal_requested=True,
        ).new_segment
        self.assertEqual(segment.translation, "大家好")

    def test_async_translation_for_current_buffer(self):
        snap = self.engine.process_update("Hello everyone", None, 1.0).buffer_snapshot
        accepted = self.engine.update_translation("大家好", snap.text, snap.generation, snap.revision)
        self.assertTrue(accepted)
        self.assertEqual(self.engine.buffer_snapshot().translation, "大家好")
        self.assertEqual(self.engine.buffer_snapshot().translated_source, "Hello everyone")

    def test_translation_after_seal_is_discarded(self):
        snap = self.engine.process_update("Hello everyone", None, 1.0).buffer_snapshot
        self.engine.process_update("Hello everyone", None, 2.0, seal_requested=True)
        self.engine.process_update("Next topic", None, 3.0)

        accepted = self.engine.update_translation("大家好", snap.text, snap.generation, snap.revision)
        self.assertFalse(accepted)
        self.assertEqual(self.engine.buffer_snapshot().translation, "")

    def test_older_revision_cannot_overwrite_newer(self):
        old = self.engine.process_update("Hello", None, 1.0).buffer_snapshot
        new = self.engine.process_update("Hello everyone", None, 2.0).buffer_snapshot
        self.assertTrue(self.engine.update_translation("大家好", new.text, new.generation, new.revision))
        self.assertFalse(self.engine.update_translation("你好", old.text, old.generation, old.revision))
        self.assertEqual(self.engine.buffer_snapshot().translation, "大家好")

    def test_translation_of_earlier_text_not_sealed(self):
        self.engine.process_update("Hello everyone", "大家好", 1.0)
        segment = self.engine.process_update(
            "Hello everyone and welcome", None, 2.0, seal_requested=True,
        ).new_segment
        self.assertEqual(segment.text, "Hello everyone and welcome")
        self.assertEqual(segment.translation, "")

    def test_deferred_seal_keeps_buffer_pending(self):
        result = self.engine.process_update("Some text", None, 1.0, seal_requested=True, defer_seal=True)
        self.assertIsNone(result.new_segment)
        self.assertEqual(result.seal_reason, "requested")
        self.assertEqual(self.engine.buffer_snapshot().text, "Some text")
        self.assertEqual(self.engine.get_all_segments(), [])

    def test_seal_pending_attaches_translation_of_current_text(self):
        snap = self.engine.process_update("Hello everyone", "你好", 1.0).buffer_snapshot
        self.engine.process_update("Hello everyone", None, 2.0, silence_detected=True, defer_seal=True)

        segment = self.engine.seal_pending(
            3.0, snap.generation, translation="大家好", source_text="Hello everyone", reason="silence",
        )
        self.assertEqual(segment.translation, "大家好")
        self.assertEqual(segment.end_time, 3.0)
        self.assertTrue(self.engine.buffer_snapshot().is_empty)

    def test_seal_pending_ignores_translation_of_other_text(self):
        snap = self.engine.process_update("Hello everyone", None, 1.0).buffer_snapshot
        segment = self.engine.seal_pending(
            2.0, snap.generation, translation="你好", source_text="Hello",
        )
        self.assertEqual(segment.text, "Hello everyone")
        self.assertEqual(segment.translation, "")

    def test_seal_pending_after_generation_change(self):
        snap = self.engine.process_update("Hello everyone", None, 1.0).buffer_snapshot
        self.engine.finalize_pending(2.0)
        self.assertIsNone(self.engine.seal_pending(3.0, snap.generation, translation="大家好"))
        self.assertEqual(len(self.engine.get_all_segments()), 1)

    def test_finalize_with_translation(self):
        self.engine.process_update("Last words", None, 1.0)
        segment = self.engine.finalize_pending(2.0, translation="最后的话", source_text="Last words")
        self.assertEqual(segment.translation, "最后的话")


# ===================================================================
# 4. Finalize / clear / stats
# ===================================================================

class TestEngineLifecycle(unittest.TestCase):

    def setUp(self):
        self.engine = SegmentationEngine(StreamingConfig())

    def test_finalize_pending(self):
        self.engine.process_update("Last words", None, 4.0)
        segment = self.engine.finalize_pending(6.0, confidence=0.8, speaker="speaker_1")
        self.assertTrue(segment.is_final)
        self.assertEqual(segment.confidence, 0.8)
        self.assertEqual(segment.speaker, "speaker_1")
        self.assertTrue(self.engine.buffer_snapshot().is_empty)

    def test_finalize_empty_buffer(self):
        self.assertIsNone(self.engine.finalize_pending(1.0))

    def test_stats(self):
        self.engine.process_update("One two three.", None, 0.0)
        self.engine.process_update("One two three.", None, 2.0, seal_requested=True)
        self.engine.process_update("Four five", None, 2.0)
        self.engine.process_update("Four five", None, 6.0, seal_requested=True)

        stats = self.engine.get_stats()
        self.assertEqual(stats["total_segments"], 2)
        self.assertAlmostEqual(stats["total_duration"], 6.0)
        self.assertAlmostEqual(stats["average_segment_duration"], 3.0)
        self.assertEqual(stats["completed_segments"], 1)
        self.assertEqual(stats["total_words"], 5)
        self.assertAlmostEqual(stats["average_words_per_segment"], 2.5)

    def test_empty_stats(self):
        stats = self.engine.get_stats()
        self.assertEqual(stats["total_segments"], 0)
        self.assertEqual(stats["average_segment_duration"], 0.0)

    def test_clear(self):
        self.engine.process_update("Something", None, 1.0, seal_requested=True)
        self.engine.process_update("Pending", None, 2.0)
        self.engine.clear()
        self.assertEqual(self.engine.get_all_segments(), [])
        self.assertTrue(self.engine.buffer_snapshot().is_empty)

    def test_segment_serialization(self):
        self.engine.process_update("Hello.", "你好。", 1.0)
        segment = self.engine.finalize_pending(2.0)
        data = segment.to_dict()
        self.assertEqual(data["text"], "Hello.")
        self.assertEqual(data["translation"], "你好。")
        self.assertTrue(data["is_final"])
        self.assertEqual(data["start_time"], 1.0)


# ===================================================================
# 5. Text helpers
# ===================================================================

class TestTextHelpers(unittest.TestCase):

    def test_detect_sentences_keeps_trailing_fragment(self):
        self.assertEqual(detect_sentences("Hello. World"), ["Hello.", "World"])

    def test_detect_sentences_cjk(self):
        self.assertEqual(detect_sentences("你好。世界！"), ["你好。", "世界！"])

    def test_is_text_complete(self):
        self.assertTrue(is_text_complete("All done!"))
        self.assertFalse(is_text_complete("Still going"))
        self.assertFalse(is_text_complete(""))

    def test_estimate_lines(self):
        self.assertEqual(estimate_lines("a" * 61), 2)
        self.assertEqual(estimate_lines("a\nb"), 2)

    def test_quality_of_simple_sentence(self):
        result = analyze_text_quality("This is a simple sentence.")
        self.assertAlmostEqual(result["complexity"], 0.225)
        self.assertEqual(result["readability"], 1.0)
        self.assertEqual(result["completeness"], 1.0)
        self.assertEqual(result["quality"], "high")

    def test_quality_of_empty_text(self):
        result = analyze_text_quality("")
        self.assertEqual(result["complexity"], 0.0)
        self.assertEqual(result["completeness"], 0.0)
        self.assertEqual(result["quality"], "low")

    def test_engine_exposes_helpers(self):
        engine = SegmentationEngine()
        self.assertEqual(engine.detect_sentences("A. B."), ["A.", "B."])
        self.assertIn("quality", engine.analyze_text_quality("Hi."))


if __name__ == "__main__":
    unittest.main()

#!/usr/bin/env python3
"""
Tests for joining per-chunk transcriptions.
"""

import sys
import unittest
from pathlib import Path

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from meetscribe.services.transcript_assembly import annotate_partial, join, partial_notice


class TestJoin(unittest.TestCase):

    def test_drops_missing_and_blank_entries(self):
        self.assertEqual(join(['First part.', None, '   ', 'Third part.']), 'First part.\n\nThird part.')

    def test_capitalizes_after_sentence_end(self):
        self.assertEqual(join(['Is it done?', 'yes it is.']), 'Is it done?\n\nYes it is.')

    def test_keeps_case_mid_sentence(self):
        self.assertEqual(join(['and then we', 'moved on']), 'and then we\n\nmoved on')

    def test_trims_whitespace(self):
        self.assertEqual(join(['  hello. ', '\nworld\n']), 'hello.\n\nWorld')

    def test_idempotent_on_well_formed_input(self):
        parts = ['We agreed.', 'Next steps follow!', 'Any questions?']
        once = join(parts)
        self.assertEqual(join([once]), once)
        self.assertEqual(join(once.split('\n\n')), once)

    def test_empty_input(self):
        self.assertEqual(join([]), '')
        self.assertEqual(join([None, None]), '')


class TestPartialNotice(unittest.TestCase):

    def test_notice_prefix(self):
        text = annotate_partial('Hello.', failed=1, total=3)
        self.assertTrue(text.startswith('[Note: 1 of 3 segments failed'))
        self.assertTrue(text.endswith('\n\nHello.'))

    def test_no_notice_without_failures(self):
        self.assertEqual(annotate_partial('Hello.', failed=0, total=3), 'Hello.')

    def test_notice_alone_when_nothing_transcribed(self):
        self.assertEqual(annotate_partial('', failed=2, total=2), partial_notice(2, 2))


if __name__ == '__main__':
    unittest.main()

"""Tests for identity module - run id generation."""

import re
import sys
from pathlib import Path
from unittest.mock import patch

sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

import pytest
from identity import (
    DEFAULT_LENGTH,
    IdentityError,
    generate_run_id,
    normalize_run_id,
)


class TestGenerateRunId:
    """Test generate_run_id."""

    def test_default_length_and_charset(self):
        """Should be lowercase alphanumeric of the default length."""
        run_id = generate_run_id()
        assert len(run_id) == DEFAULT_LENGTH
        assert re.fullmatch(r'[a-z0-9]+', run_id)

    def test_custom_length(self):
        assert len(generate_run_id(length=5)) == 5

    def test_no_collisions_over_many_runs(self):
        """N generated ids should be pairwise distinct."""
        ids = [generate_run_id() for _ in range(5000)]
        assert len(set(ids)) == len(ids)

    def test_never_reissues_within_process(self):
        """Draws that repeat an issued id are discarded, then the generator gives up."""
        draws = ['q', 'q', 'r'] + ['q', 'r'] * 20
        with patch('identity.secrets.choice', side_effect=draws):
            assert generate_run_id(length=1, alphabet='qr') == 'q'
            assert generate_run_id(length=1, alphabet='qr') == 'r'
            with pytest.raises(IdentityError, match='unused run id'):
                generate_run_id(length=1, alphabet='qr')

    def test_entropy_failure_raises(self):
        """Unavailable entropy should fail loudly."""
        with patch('identity.secrets.choice', side_effect=NotImplementedError('no urandom')):
            with pytest.raises(IdentityError, match='Entropy source unavailable'):
                generate_run_id()

    def test_rejects_bad_length(self):
        with pytest.raises(ValueError):
            generate_run_id(length=0)
        with pytest.raises(ValueError):
            generate_run_id(length=33)

    def test_rejects_uppercase_alphabet(self):
        with pytest.raises(ValueError):
            generate_run_id(alphabet='ABC')


class TestNormalizeRunId:
    """Test normalize_run_id for caller-supplied ids."""

    def test_lowercases(self):
        assert normalize_run_id(' AbC123 ') == 'abc123'

    def test_numeric_id_accepted(self):
        assert normalize_run_id('28424') == '28424'

    @pytest.mark.parametrize('value', ['', 'has-dash', 'has space', 'x' * 33])
    def test_rejects_invalid(self, value):
        with pytest.raises(IdentityError):
            normalize_run_id(value)

    def test_supplied_id_is_not_generated_later(self):
        """A supplied id is recorded so the generator will not hand it out."""
        normalize_run_id('zz')
        with pytest.raises(IdentityError):
            generate_run_id(length=2, alphabet='z')

"""Tests for the controlled genre vocabulary."""

import pytest

from jukebox.core.genres import (
    VALID_GENRES,
    GenreValidator,
    validate_genre,
    validate_genres,
)


class TestValidateGenre:
    def test_exact_match(self):
        assert validate_genre("Rock") == "Rock"

    def test_case_insensitive_returns_canonical_spelling(self):
        assert validate_genre("hip hop") == "Hip Hop"
        assert validate_genre("EDM") == "EDM"
        assert validate_genre("edm") == "EDM"

    @pytest.mark.parametrize(
        "raw,expected",
        [
            ("  Pop Music ", "Pop"),
            ("Genre: Jazz", "Jazz"),
            ("genre:techno", "Techno"),
            ("Rock 2023", "Rock"),
            ("Dance (13)", "Dance"),
            ("Folk music", "Folk"),
        ],
    )
    def test_noise_is_stripped(self, raw, expected):
        assert validate_genre(raw) == expected

    @pytest.mark.parametrize("raw", [None, "", "   ", 42, ["Rock"], "Deutsch-Rap", "Music"])
    def test_invalid_input_yields_none(self, raw):
        assert validate_genre(raw) is None

    def test_ampersand_genre_matches_as_single_value(self):
        assert validate_genre("Drum & Bass") == "Drum & Bass"
        assert validate_genre("r&b") == "R&B"


class TestValidateGenres:
    def test_first_valid_in_delimited_string(self):
        assert validate_genres("Deutsch-Rap, Pop") == "Pop"

    @pytest.mark.parametrize("raw", ["Rock; Pop", "Rock/Pop", "Rock + Pop", "Rock,Pop"])
    def test_all_delimiters(self, raw):
        assert validate_genres(raw) == "Rock"

    def test_list_input_is_not_split(self):
        assert validate_genres(["Noise Pop", "ska"]) == "Ska"
        assert validate_genres(["Drum & Bass"]) == "Drum & Bass"

    def test_delimited_string_splits_ampersand_genres(self):
        # "Drum & Bass" as a string is split into "Drum" and "Bass"
        assert validate_genres("Drum & Bass") is None

    def test_nothing_recognized(self):
        assert validate_genres("Schlager, Volksmusik") is None
        assert validate_genres([]) is None
        assert validate_genres(None) is None
        assert validate_genres(12) is None


def test_vocabulary_has_no_case_collisions_with_different_spelling():
    lookup = GenreValidator._lookup()
    assert lookup["pop"] == "Pop"
    assert len(lookup) <= len(VALID_GENRES)

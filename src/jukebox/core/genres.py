"""Controlled genre vocabulary for catalog tracks.

Free-text genre tags are noisy ("Pop Music", "Rock 2023", "Genre: Jazz",
"Dance (13)"). Only tags that reduce to an entry of ``VALID_GENRES`` are kept;
everything else becomes ``None`` and is shown as "Unknown" by clients.

Typical usage example:
    GenreValidator.validate("  pop music ")          # "Pop"
    GenreValidator.validate_many("Deutsch-Rap, Pop")  # "Pop"
    GenreValidator.validate_many(["Noise Pop", "ska"])  # "Ska"
"""

import re
from typing import Dict, Iterable, List, Optional, Union

VALID_GENRES: List[str] = [
    # Electronic/Dance
    "Electronic", "Dance", "House", "Techno", "Trance", "Dubstep", "EDM", "Electro",
    "Progressive House", "Deep House", "Tech House", "Minimal", "Ambient", "Drum & Bass",
    "Jungle", "Breakbeat", "Hardcore", "Hardstyle", "Gabber", "IDM", "Downtempo",
    "Chillout", "Lounge", "Trip Hop", "Synthwave", "Synthpop", "New Wave",
    # Pop
    "Pop", "Dance Pop", "Synth Pop", "Electropop", "Teen Pop", "Adult Contemporary",
    "Contemporary R&B", "Europop", "J-Pop", "K-Pop", "Latin Pop", "Ballad",
    # Rock
    "Rock", "Hard Rock", "Soft Rock", "Classic Rock", "Alternative Rock", "Indie Rock",
    "Progressive Rock", "Psychedelic Rock", "Punk Rock", "Post-Punk",
    "Grunge", "Metal", "Heavy Metal", "Death Metal", "Black Metal", "Power Metal",
    "Thrash Metal", "Folk Rock", "Country Rock", "Southern Rock", "Blues Rock",
    # Hip-Hop/Rap
    "Hip Hop", "Hip-Hop", "Rap", "Gangsta Rap", "East Coast Hip Hop", "West Coast Hip Hop",
    "Southern Hip Hop", "Trap", "Conscious Hip Hop", "Alternative Hip Hop", "Old School Hip Hop",
    "Boom Bap", "Crunk", "Grime", "UK Hip Hop", "German Rap", "Deutschrap", "French Rap",
    # R&B/Soul/Funk
    "R&B", "Soul", "Funk", "Disco", "Motown", "Neo-Soul",
    "Classic Soul", "Northern Soul", "Gospel", "Blues", "Rhythm & Blues",
    # Country/Folk
    "Country", "Country Pop", "Bluegrass", "Folk",
    "Americana", "Alt-Country", "Honky Tonk", "Western", "Celtic", "Traditional",
    # Jazz
    "Jazz", "Smooth Jazz", "Bebop", "Cool Jazz", "Free Jazz", "Fusion", "Swing",
    "Big Band", "Dixieland", "Contemporary Jazz", "Acid Jazz", "Nu Jazz",
    # Classical/Instrumental
    "Classical", "Baroque", "Romantic", "Modern Classical", "Orchestral", "Chamber Music",
    "Opera", "Instrumental", "Soundtrack", "Score", "New Age", "Meditation",
    # World Music
    "World", "World Music", "Latin", "Salsa", "Reggaeton", "Bachata", "Merengue",
    "Bossa Nova", "Samba", "Tango", "Flamenco", "Reggae", "Dancehall", "Ska",
    "Afrobeat", "Highlife", "Soukous", "Bhangra", "Bollywood", "Arabic", "Turkish",
    "Greek", "Russian", "French", "Italian", "Spanish", "Portuguese", "German",
    # Alternative/Indie
    "Alternative", "Indie", "Indie Pop", "Shoegaze",
    "Dream Pop", "Post-Rock", "Math Rock", "Emo", "Screamo", "Metalcore",
    # Era/Style descriptors
    "Oldies", "Retro", "Vintage",
    # Miscellaneous
    "Easy Listening", "Smooth", "Chill", "Acoustic", "Live", "Unplugged",
    "Cover", "Remix", "Compilation", "Christmas", "Holiday", "Seasonal",
    "Experimental", "Avant-Garde", "Noise", "Industrial", "Gothic",
]


class GenreValidator:
    """Normalizes raw genre tags against ``VALID_GENRES``.

    All methods are static and side-effect free.
    """

    # Applied in order; each strips one kind of noise
    CLEAN_PATTERNS = [
        re.compile(r"^genre:\s*", re.IGNORECASE),
        re.compile(r"\s*music$", re.IGNORECASE),
        re.compile(r"\s*\d{4}$"),  # "Pop 2023"
        re.compile(r"\s*\(\d+\)$"),  # ID3v1 style "Rock (17)"
    ]

    SPLIT_REGEX = re.compile(r"[,;/&+]")

    _LOOKUP: Dict[str, str] = {}

    @classmethod
    def _lookup(cls) -> Dict[str, str]:
        if not cls._LOOKUP:
            # First spelling wins for duplicate entries
            for genre in VALID_GENRES:
                cls._LOOKUP.setdefault(genre.lower(), genre)
        return cls._LOOKUP

    @staticmethod
    def clean(raw: str) -> str:
        """Strip prefixes, suffixes and surrounding whitespace from a tag."""
        text = raw.strip()
        for pattern in GenreValidator.CLEAN_PATTERNS:
            text = pattern.sub("", text)
        return text.strip()

    @classmethod
    def validate(cls, raw: object) -> Optional[str]:
        """Return the canonical genre for a single raw tag, or None.

        Args:
            raw: Raw tag value. Anything that is not a non-empty string
                yields None.

        Returns:
            The canonical spelling from ``VALID_GENRES`` or None.
        """
        if not raw or not isinstance(raw, str):
            return None
        cleaned = cls.clean(raw)
        if not cleaned:
            return None
        return cls._lookup().get(cleaned.lower())

    @classmethod
    def validate_many(
        cls, raw: Union[str, Iterable[str], None]
    ) -> Optional[str]:
        """Return the first canonical genre found in a multi-valued tag.

        Strings are split on ``, ; / & +``; lists and tuples are taken as
        already split. Unrecognized input is not an error, it yields None.
        """
        if not raw:
            return None
        if isinstance(raw, str):
            candidates = [part.strip() for part in cls.SPLIT_REGEX.split(raw)]
        elif isinstance(raw, (list, tuple)):
            candidates = list(raw)
        else:
            return None

        for candidate in candidates:
            genre = cls.validate(candidate)
            if genre is not None:
                return genre
        return None


validate_genre = GenreValidator.validate
validate_genres = GenreValidator.validate_many

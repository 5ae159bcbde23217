"""
Reads back the tags of a produced file to confirm the muxer embedded them.
"""

import logging

from mutagen import File as MutagenFile
from mutagen import MutagenError
from mutagen.easyid3 import EasyID3
from mutagen.id3 import ID3NoHeaderError

log = logging.getLogger(__name__)


class FileIntegrityChecker:
    """A collection of static methods for validating produced files."""

    @staticmethod
    def read_tags(filepath: str) -> dict[str, list[str]]:
        """
        Returns the title/artist/album tags of ``filepath``.

        MP3 files are read through their ID3 header only, other containers
        through mutagen's format detection.
        """
        try:
            if filepath.lower().endswith(".mp3"):
                tags = EasyID3(filepath)
            else:
                audio = MutagenFile(filepath, easy=True)
                if audio is None or audio.tags is None:
                    return {}
                tags = audio.tags
        except ID3NoHeaderError:
            return {}
        except (MutagenError, OSError) as e:
            log.debug(f"Tag read failed for '{filepath}': {e}")
            return {}
        return {
            key: [str(v) for v in tags.get(key, [])]
            for key in ("title", "artist", "album")
        }

    @staticmethod
    def check_tags(filepath: str, expected: dict[str, str]) -> bool:
        """
        Checks that each expected tag is present with the expected value.

        Args:
            filepath: Path to the tagged file.
            expected: Mapping of tag name to expected value.

        Returns:
            True if every tag matches, False otherwise.
        """
        found = FileIntegrityChecker.read_tags(filepath)
        for key, value in expected.items():
            values = found.get(key) or []
            if value not in values and ", ".join(values) != value:
                log.warning(
                    f"Tag check failed for '{filepath}': {key}={values!r}, "
                    f"expected {value!r}."
                )
                return False
        return True

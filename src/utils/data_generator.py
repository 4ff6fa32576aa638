# ========================
# src/utils/data_generator.py
# ========================

"""
Test Archive Generation

Builds ZIP archives of CSV files for exercising the ingestion pipeline.
Rows are generated on the fly and streamed into the archive, so even the
large preset never holds a whole CSV file in memory.
"""

import io
import random
import logging
import zipfile
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, Optional

from tqdm import tqdm

logger = logging.getLogger(__name__)

CSV_HEADER = "id,column1,column2,column3\n"

# name -> (number of CSV files, rows per file)
PRESETS = {
    'small': (3, 100),
    'medium': (10, 100_000),
    'large': (20, 1_000_000),
}


class TestArchiveGenerator:
    """
    Generator for ZIP archives of synthetic CSV files.

    Every file has the header ``id,column1,column2,column3``; ids are
    ``<file number>_<row number>`` and the other columns random floats.
    """

    # Keep pytest from collecting this class
    __test__ = False

    def __init__(self, seed: Optional[int] = None):
        """
        Initialize the generator.

        Args:
            seed (int): Random seed for reproducible archives
        """
        self._random = random.Random(seed)
        logger.info(f"TestArchiveGenerator initialized with seed: {seed}")

    def iter_rows(self, file_index: int, num_rows: int, malformed_row: Optional[int] = None) -> Iterator[str]:
        """
        Yield the lines of one CSV file, header first.

        Args:
            file_index (int): Zero based file number
            num_rows (int): Data rows to produce
            malformed_row (int): Zero based row to replace with a value the
                target schema rejects, if any
        """
        yield CSV_HEADER
        for row_index in range(num_rows):
            row_id = f"{file_index + 1}_{row_index + 1}"
            if row_index == malformed_row:
                yield f"{row_id},not-a-number,{self._random.random()},{self._random.random()}\n"
            else:
                yield f"{row_id},{self._random.random()},{self._random.random()},{self._random.random()}\n"

    def write_archive(self,
                      target,
                      num_files: int,
                      num_rows: int,
                      prefix: str = "data",
                      malformed: Optional[Dict[int, int]] = None,
                      compression: int = zipfile.ZIP_DEFLATED,
                      show_progress: bool = False) -> Dict[str, Any]:
        """
        Write an archive of CSV files to a path or binary file object.

        Args:
            target: File path or writable binary file object
            num_files (int): Number of CSV members
            num_rows (int): Data rows per member
            prefix (str): Member names are ``<prefix>_<n>.csv``
            malformed (dict): file index -> row index to corrupt
            compression (int): zipfile compression constant
            show_progress (bool): Draw a progress bar per archive

        Returns:
            dict: Generation statistics
        """
        malformed = malformed or {}
        stats = {
            'num_files': num_files,
            'rows_per_file': num_rows,
            'total_rows': num_files * num_rows,
            'members': [],
            'malformed_members': [],
            'uncompressed_bytes': 0,
        }

        if isinstance(target, (str, Path)):
            Path(target).parent.mkdir(parents=True, exist_ok=True)

        progress = tqdm(total=num_files, desc=str(prefix), unit="file", disable=not show_progress)
        try:
            with zipfile.ZipFile(target, 'w', compression=compression, compresslevel=9 if compression == zipfile.ZIP_DEFLATED else None) as archive:
                for file_index in range(num_files):
                    name = f"{prefix}_{file_index + 1}.csv"
                    rows = self.iter_rows(file_index, num_rows, malformed.get(file_index))
                    stats['uncompressed_bytes'] += self._write_member(archive, name, rows)
                    stats['members'].append(name)
                    if file_index in malformed:
                        stats['malformed_members'].append(name)
                    progress.update(1)
                    logger.debug(f"Wrote member {name} ({num_rows:,} rows)")
        finally:
            progress.close()

        logger.info(f"Archive generated: {num_files} files x {num_rows:,} rows")
        return stats

    @staticmethod
    def _write_member(archive: zipfile.ZipFile, name: str, lines: Iterable[str]) -> int:
        written = 0
        # force_zip64 since the final size is unknown when the entry is opened
        with archive.open(name, 'w', force_zip64=True) as member:
            buffer = []
            buffered = 0
            for line in lines:
                buffer.append(line)
                buffered += len(line)
                if buffered >= 64 * 1024:
                    written += member.write(''.join(buffer).encode('utf-8'))
                    buffer, buffered = [], 0
            if buffer:
                written += member.write(''.join(buffer).encode('utf-8'))
        return written

    def generate_archive_bytes(self, num_files: int, num_rows: int, **kwargs) -> bytes:
        """Build an archive in memory (tests and small uploads)."""
        buffer = io.BytesIO()
        self.write_archive(buffer, num_files, num_rows, **kwargs)
        return buffer.getvalue()

    def generate_preset(self, preset: str, output_dir: str, show_progress: bool = True) -> Dict[str, Any]:
        """
        Generate one of the named presets (small, medium, large).

        Returns:
            dict: Generation statistics including the archive path
        """
        if preset not in PRESETS:
            raise ValueError(f"Unknown preset '{preset}'. Choose from: {', '.join(PRESETS)}")

        num_files, num_rows = PRESETS[preset]
        file_path = Path(output_dir) / f"{preset}.zip"
        logger.info(f"Creating {file_path.name} with {num_files} files, each with {num_rows:,} rows...")

        stats = self.write_archive(file_path, num_files, num_rows, prefix=preset, show_progress=show_progress)
        stats['file_path'] = str(file_path)
        stats['archive_bytes'] = file_path.stat().st_size
        logger.info(f"{file_path.name}: {stats['archive_bytes'] / (1024 * 1024):.2f} MB zipped, "
                    f"{stats['uncompressed_bytes'] / (1024 * 1024):.2f} MB unzipped")
        return stats

"""Turns an uploaded dataset file into dataset entries.

An import runs at most once per upload: the PENDING -> PROCESSING claim is a
conditional update, and terminal uploads are skipped, so redelivered queue
messages never duplicate entries. Entries whose input matches an incoming
record are marked outdated in the same transaction that inserts the new ones,
while that transaction holds a row lock on the dataset.
"""

import asyncio
import csv
import hashlib
import io
import json
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from sqlalchemy import Select, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from dataset_service.models import (
    Dataset,
    DatasetEntry,
    DatasetFileUpload,
    EntrySplit,
    FileUploadStatus,
)
from dataset_service.uploads import advance_status

logger = logging.getLogger(__name__)

BlobReader = Callable[[str], Awaitable[bytes]]

_HASH_CHUNK_SIZE = 500


class DatasetFileError(ValueError):
    pass


@dataclass
class ParsedEntry:
    input: Any
    output: Any | None
    split: EntrySplit


def input_hash(value: Any) -> str:
    canonical = json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def _parse_split(value: Any, where: str) -> EntrySplit:
    if value is None or value == "":
        return EntrySplit.TRAIN
    try:
        return EntrySplit(str(value).strip().upper())
    except ValueError:
        raise DatasetFileError(f"{where}: split must be TRAIN or TEST")


def _decode(raw: bytes) -> str:
    if not raw:
        raise DatasetFileError("file is empty")
    try:
        return raw.decode("utf-8-sig")
    except UnicodeDecodeError:
        raise DatasetFileError("file must be utf-8 encoded")


def _parse_jsonl(text: str, max_entries: int) -> list[ParsedEntry]:
    entries: list[ParsedEntry] = []
    # only "\n" separates records; JSON strings may carry raw U+2028 and friends
    for line_number, line in enumerate(text.split("\n"), start=1):
        line = line.removesuffix("\r")
        if not line.strip():
            continue
        where = f"line {line_number}"
        try:
            record = json.loads(line)
        except json.JSONDecodeError:
            raise DatasetFileError(f"{where}: invalid JSON")
        if not isinstance(record, dict):
            raise DatasetFileError(f"{where}: expected a JSON object")
        value = record.get("input", record.get("messages"))
        if value is None:
            raise DatasetFileError(f"{where}: missing input")
        entries.append(ParsedEntry(value, record.get("output"), _parse_split(record.get("split"), where)))
        if len(entries) > max_entries:
            raise DatasetFileError(f"file must have at most {max_entries} entries")
    return entries


def _decode_cell(cell: str | None) -> Any:
    if cell is None or cell == "":
        return None
    try:
        return json.loads(cell)
    except json.JSONDecodeError:
        return cell


def _parse_csv(text: str, max_entries: int) -> list[ParsedEntry]:
    reader = csv.DictReader(io.StringIO(text))
    try:
        fieldnames = [name.strip().lower() for name in reader.fieldnames or []]
        if "input" not in fieldnames:
            raise DatasetFileError("csv must contain an input column")
        reader.fieldnames = fieldnames

        entries: list[ParsedEntry] = []
        for row in reader:
            where = f"row {reader.line_num}"
            value = _decode_cell(row.get("input"))
            if value is None:
                raise DatasetFileError(f"{where}: missing input")
            entries.append(
                ParsedEntry(value, _decode_cell(row.get("output")), _parse_split(row.get("split"), where))
            )
            if len(entries) > max_entries:
                raise DatasetFileError(f"file must have at most {max_entries} entries")
    except csv.Error as exc:
        raise DatasetFileError(f"invalid csv file: {exc}")
    return entries


def parse_dataset_file(file_name: str, raw: bytes, max_entries: int) -> list[ParsedEntry]:
    text = _decode(raw)
    lowered = file_name.lower()
    if lowered.endswith(".jsonl"):
        entries = _parse_jsonl(text, max_entries)
    elif lowered.endswith(".csv"):
        entries = _parse_csv(text, max_entries)
    else:
        raise DatasetFileError("unsupported file type, expected .jsonl or .csv")
    if not entries:
        raise DatasetFileError("file does not contain any entries")
    return entries


def prepare_entries(file_name: str, raw: bytes, max_entries: int) -> dict[str, ParsedEntry]:
    """Parse a file and key its entries by input hash.

    A repeated input within one file keeps its last occurrence. CPU bound, the
    worker runs it in a thread.
    """
    latest: dict[str, ParsedEntry] = {}
    for entry in parse_dataset_file(file_name, raw, max_entries):
        key = input_hash(entry.input)
        latest.pop(key, None)
        latest[key] = entry
    return latest


def dataset_lock(dataset_id: str) -> Select:
    return select(Dataset.id).where(Dataset.id == dataset_id).with_for_update()


async def _write_entries(
    session: AsyncSession, upload: DatasetFileUpload, latest: dict[str, ParsedEntry]
) -> int:
    # imports into one dataset supersede entries one at a time
    await session.execute(dataset_lock(upload.dataset_id))

    hashes = list(latest)
    for start in range(0, len(hashes), _HASH_CHUNK_SIZE):
        await session.execute(
            update(DatasetEntry)
            .where(
                DatasetEntry.dataset_id == upload.dataset_id,
                DatasetEntry.input_hash.in_(hashes[start : start + _HASH_CHUNK_SIZE]),
                DatasetEntry.outdated.is_(False),
            )
            .values(outdated=True)
        )

    session.add_all(
        DatasetEntry(
            dataset_id=upload.dataset_id,
            input=entry.input,
            output=entry.output,
            split=entry.split,
            input_hash=key,
            import_id=upload.id,
        )
        for key, entry in latest.items()
    )
    await session.flush()
    return len(latest)


async def _mark_failed(session: AsyncSession, file_upload_id: str, message: str) -> None:
    await session.rollback()
    try:
        await advance_status(
            session,
            file_upload_id,
            FileUploadStatus.PROCESSING,
            FileUploadStatus.ERROR,
            error_message=message,
        )
        await session.commit()
    except Exception:
        logger.exception("failed to mark file upload %s as failed", file_upload_id)
        await session.rollback()


async def import_dataset_entries(
    session: AsyncSession,
    file_upload_id: str,
    read_blob: BlobReader,
    max_entries: int = 100_000,
) -> DatasetFileUpload | None:
    upload = await session.get(DatasetFileUpload, file_upload_id)
    if upload is None:
        logger.warning("file upload %s not found, skipping import", file_upload_id)
        return None
    if upload.status.is_terminal:
        logger.info("file upload %s is already %s, skipping", file_upload_id, upload.status.value)
        return upload

    claimed = await advance_status(
        session, file_upload_id, FileUploadStatus.PENDING, FileUploadStatus.PROCESSING
    )
    await session.commit()
    if not claimed:
        logger.info("file upload %s is already being processed, skipping", file_upload_id)
        await session.refresh(upload)
        return upload

    try:
        raw = await read_blob(upload.blob_name)
        entries = await asyncio.to_thread(prepare_entries, upload.file_name, raw, max_entries)
        count = await _write_entries(session, upload, entries)
        completed = await advance_status(
            session,
            file_upload_id,
            FileUploadStatus.PROCESSING,
            FileUploadStatus.COMPLETE,
            entries_imported=count,
            error_message=None,
        )
        if completed:
            await session.commit()
            logger.info("file upload %s imported %s entries", file_upload_id, count)
        else:
            await session.rollback()
            logger.warning("file upload %s left PROCESSING before import finished", file_upload_id)
    except DatasetFileError as exc:
        logger.warning("file upload %s is invalid: %s", file_upload_id, exc)
        await _mark_failed(session, file_upload_id, str(exc))
    except Exception:
        logger.exception("failed to import file upload %s", file_upload_id)
        await _mark_failed(session, file_upload_id, "failed to import file")

    await session.refresh(upload)
    return upload

"""Storage package providing append-only output for signals and executions."""

from .jsonl_writer import JsonlRecordWriter, to_jsonable

__all__ = ["JsonlRecordWriter", "to_jsonable"]

"""Reporting package: streaming file writers and the run summary."""

from .json_export import JsonArrayWriter
from .csv_export import CsvRecordWriter
from .summary import print_summary

__all__ = [
    "JsonArrayWriter",
    "CsvRecordWriter",
    "print_summary",
]

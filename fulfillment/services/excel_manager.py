"""
Excel Sales Ledger with Concurrency Control

Appends one row per finalized bill to an Excel workbook. Several Celery
workers may write at once, so every read-modify-write of the workbook runs
under a file lock.
"""

import json
import logging
from datetime import date, datetime
from pathlib import Path
from typing import Any, Optional

import pandas as pd
from filelock import FileLock, Timeout

from fulfillment.core.config import get_settings

settings = get_settings()
logger = logging.getLogger(__name__)


class LedgerReadError(Exception):
    """The existing ledger workbook could not be read."""


class ExcelManager:
    """Process-safe sales ledger on top of pandas + openpyxl."""

    LEDGER_COLUMNS = [
        "order_id",
        "vendor_id",
        "channel",
        "status",
        "customer_name",
        "payment_method",
        "item_count",
        "items",
        "subtotal",
        "gst_total",
        "pre_discount_total",
        "discount_type",
        "discount_value",
        "discount_amount",
        "grand_total",
        "finalized_at",
        "exported_at",
    ]

    def __init__(self, data_directory: Optional[str] = None, filename: Optional[str] = None):
        self.data_dir = Path(data_directory or settings.data_directory)
        self.ledger_file = self.data_dir / (filename or settings.sales_ledger_filename)
        self.lock_file = self.ledger_file.with_name(self.ledger_file.name + ".lock")
        self.lock_timeout = settings.excel_lock_timeout

    def _ensure_data_dir(self) -> None:
        if not self.data_dir.exists():
            self.data_dir.mkdir(parents=True, exist_ok=True)
            logger.info(f"Created data directory: {self.data_dir}")

    def _load_or_create_df(self) -> pd.DataFrame:
        if self.ledger_file.exists():
            try:
                return pd.read_excel(self.ledger_file, engine="openpyxl")
            except Exception as e:
                logger.error(f"Error reading {self.ledger_file}, refusing to overwrite: {e}")
                raise LedgerReadError(f"Sales ledger {self.ledger_file} is unreadable") from e
        return pd.DataFrame(columns=self.LEDGER_COLUMNS)

    def _row_for(self, invoice: dict[str, Any], export_time: str) -> dict[str, Any]:
        items = invoice.get("items") or []
        discount = invoice.get("discount") or {}
        return {
            "order_id": invoice.get("order_id"),
            "vendor_id": invoice.get("vendor_id"),
            "channel": invoice.get("channel"),
            "status": invoice.get("status"),
            "customer_name": invoice.get("customer_name"),
            "payment_method": invoice.get("payment_method"),
            "item_count": sum(int(item.get("quantity", 0)) for item in items),
            "items": json.dumps([
                {"name": item.get("name"), "quantity": item.get("quantity"), "line_total": item.get("line_total")}
                for item in items
            ]),
            "subtotal": invoice.get("subtotal"),
            "gst_total": invoice.get("gst_total"),
            "pre_discount_total": invoice.get("pre_discount_total"),
            "discount_type": discount.get("type"),
            "discount_value": discount.get("value"),
            "discount_amount": invoice.get("discount_amount", 0),
            "grand_total": invoice.get("grand_total"),
            "finalized_at": invoice.get("finalized_at", export_time),
            "exported_at": export_time,
        }

    def append_invoice(self, invoice: dict[str, Any]) -> dict[str, Any]:
        """
        Append a finalized bill to the ledger.

        Args:
            invoice: ``Invoice.to_dict()`` plus vendor_id, channel, status,
                customer_name and finalized_at

        Returns:
            dict with success, message, order_id and exported_at
        """
        self._ensure_data_dir()

        order_id = invoice.get("order_id", 0)
        result = {
            "success": False,
            "message": "",
            "order_id": order_id,
            "exported_at": None,
        }

        try:
            with FileLock(str(self.lock_file), timeout=self.lock_timeout):
                logger.debug(f"Ledger lock acquired for Order #{order_id}")

                df = self._load_or_create_df()
                export_time = datetime.now().isoformat()
                row = self._row_for(invoice, export_time)

                if df.empty:
                    df = pd.DataFrame([row], columns=self.LEDGER_COLUMNS)
                else:
                    df = pd.concat([df, pd.DataFrame([row])], ignore_index=True)
                df.to_excel(str(self.ledger_file), index=False, engine="openpyxl")

                logger.info(f"Order #{order_id} appended to sales ledger")
                result["success"] = True
                result["message"] = f"Order #{order_id} exported"
                result["exported_at"] = export_time

        except Timeout:
            result["message"] = f"Lock timeout ({self.lock_timeout}s)"
            logger.error(f"Ledger lock timeout for Order #{order_id}")

        return result

    def read_ledger(self, vendor_id: Optional[int] = None) -> list[dict[str, Any]]:
        """Rows of the ledger, optionally for one vendor."""
        if not self.ledger_file.exists():
            return []
        try:
            df = pd.read_excel(self.ledger_file, engine="openpyxl")
        except Exception as e:
            logger.error(f"Error reading sales ledger: {e}")
            return []
        if vendor_id is not None:
            df = df[df["vendor_id"] == vendor_id]
        return df.to_dict("records")

    def daily_totals(self, vendor_id: Optional[int] = None) -> dict[date, float]:
        """Grand totals per finalization day."""
        rows = self.read_ledger(vendor_id)
        if not rows:
            return {}
        df = pd.DataFrame(rows)
        df["day"] = pd.to_datetime(df["finalized_at"], utc=True).dt.date
        grouped = df.groupby("day")["grand_total"].sum().round(2)
        return {day: float(total) for day, total in grouped.items()}

    def clear(self) -> bool:
        """Delete the ledger and its lock file."""
        try:
            for f in (self.ledger_file, self.lock_file):
                if f.exists():
                    f.unlink()
            logger.info("Sales ledger cleared")
            return True
        except OSError as e:
            logger.error(f"Error clearing sales ledger: {e}")
            return False

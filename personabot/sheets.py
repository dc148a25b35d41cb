import json
import logging
from datetime import datetime, timezone

from . import config
from .session import PendingCheckout

logger = logging.getLogger("personabot.sheets")

ENTITLEMENT_HEADERS = ['session_id', 'expires_at', 'plan_id', 'updated_at']
PENDING_HEADERS = ['checkout_id', 'session_id', 'plan_id', 'created_at', 'pay_url']
PROCESSED_HEADERS = ['payment_id', 'processed_at']

SCOPE = [
    'https://spreadsheets.google.com/feeds',
    'https://www.googleapis.com/auth/drive',
]


def now_str() -> str:
    return datetime.now(timezone.utc).strftime('%Y-%m-%d %H:%M:%S')


def _worksheet(ss, title: str, headers: list[str]):
    try:
        ws = ss.worksheet(title)
    except Exception:
        ws = ss.add_worksheet(title=title, rows=1000, cols=len(headers))
        ws.append_row(headers)
        return ws
    # Ensure header row (non-destructive)
    try:
        if ws.row_values(1) != headers:
            ws.update(range_name='A1', values=[headers])
    except Exception as e:
        logger.warning(f"{title} header check error: {e}")
    return ws


def open_spreadsheet(credentials_json: str | None = None, sheet_name: str | None = None):
    import gspread
    from google.oauth2.service_account import Credentials

    creds_dict = json.loads(credentials_json or config.GOOGLE_CREDENTIALS_JSON)
    creds = Credentials.from_service_account_info(creds_dict, scopes=SCOPE)
    gc = gspread.authorize(creds)
    return gc.open(sheet_name or config.GOOGLE_SHEET_NAME)


def _int_or_none(val):
    try:
        return int(str(val).strip())
    except (TypeError, ValueError):
        return None


class SheetsPersistence:
    """Write-through mirror of entitlements, pending checkouts and processed payments."""

    def __init__(self, spreadsheet):
        self.entitlements = _worksheet(spreadsheet, 'Entitlements', ENTITLEMENT_HEADERS)
        self.pending = _worksheet(spreadsheet, 'PendingCheckouts', PENDING_HEADERS)
        self.processed = _worksheet(spreadsheet, 'ProcessedPayments', PROCESSED_HEADERS)
        self.entitlement_rows: dict[int, int] = {}

    def _rebuild_entitlement_cache(self, records=None):
        if records is None:
            records = self.entitlements.get_all_records(expected_headers=ENTITLEMENT_HEADERS)
        self.entitlement_rows.clear()
        # rows start at 2 (row 1 is header)
        for idx, rec in enumerate(records, start=2):
            sid = _int_or_none(rec.get('session_id'))
            if sid is not None:
                self.entitlement_rows[sid] = idx

    # --- loads (startup) ---
    def load_entitlements(self) -> list[tuple]:
        out = []
        try:
            records = self.entitlements.get_all_records(expected_headers=ENTITLEMENT_HEADERS)
            self._rebuild_entitlement_cache(records)
            for rec in records:
                sid = _int_or_none(rec.get('session_id'))
                expiry = _int_or_none(rec.get('expires_at'))
                if sid is None or expiry is None:
                    continue
                out.append((sid, expiry, str(rec.get('plan_id') or '') or None))
        except Exception as e:
            logger.warning(f"Entitlements load error: {e}")
        return out

    def load_pending(self) -> list[PendingCheckout]:
        out = []
        try:
            for rec in self.pending.get_all_records(expected_headers=PENDING_HEADERS):
                sid = _int_or_none(rec.get('session_id'))
                created = _int_or_none(rec.get('created_at'))
                cid = str(rec.get('checkout_id') or '')
                if not cid or sid is None or created is None:
                    continue
                out.append(PendingCheckout(cid, sid, str(rec.get('plan_id') or ''), created,
                                           str(rec.get('pay_url') or '')))
        except Exception as e:
            logger.warning(f"Pending load error: {e}")
        return out

    def load_processed(self) -> list[tuple]:
        out = []
        try:
            for rec in self.processed.get_all_records(expected_headers=PROCESSED_HEADERS):
                pid = str(rec.get('payment_id') or '')
                if pid:
                    out.append((pid, _int_or_none(rec.get('processed_at')) or 0))
        except Exception as e:
            logger.warning(f"Processed payments load error: {e}")
        return out

    # --- writes ---
    def save_entitlement(self, row: list):
        """``row`` is ``Session.entitlement_row()``: session_id, expires_at, plan_id."""
        row_idx = self.entitlement_rows.get(row[0])
        row = list(row) + [now_str()]
        if row_idx:
            self.entitlements.update(range_name=f'A{row_idx}:D{row_idx}', values=[row])
        else:
            self.entitlements.append_row(row)
            self._rebuild_entitlement_cache()

    def add_pending(self, row: list):
        self.pending.append_row(list(row))

    def delete_pending(self, checkout_id: str):
        cell = self.pending.find(str(checkout_id), in_column=1)
        if cell is not None:
            self.pending.delete_rows(cell.row)

    def add_processed(self, payment_id: str, processed_at: int):
        self.processed.append_row([payment_id, processed_at])

from unittest.mock import MagicMock

from personabot.session import PendingCheckout, Session
from personabot.sheets import ENTITLEMENT_HEADERS, PENDING_HEADERS, PROCESSED_HEADERS, SheetsPersistence


def make_spreadsheet(records=None):
    sheets = {}
    for title, headers in (('Entitlements', ENTITLEMENT_HEADERS), ('PendingCheckouts', PENDING_HEADERS),
                           ('ProcessedPayments', PROCESSED_HEADERS)):
        ws = MagicMock(name=title)
        ws.row_values.return_value = headers
        ws.get_all_records.return_value = (records or {}).get(title, [])
        sheets[title] = ws
    ss = MagicMock()
    ss.worksheet.side_effect = lambda title: sheets[title]
    return ss, sheets


def test_missing_worksheet_is_created():
    ss = MagicMock()
    ss.worksheet.side_effect = Exception('WorksheetNotFound')
    SheetsPersistence(ss)
    titles = [c.kwargs['title'] for c in ss.add_worksheet.call_args_list]
    assert titles == ['Entitlements', 'PendingCheckouts', 'ProcessedPayments']


def test_loads_skip_bad_rows():
    ss, _ = make_spreadsheet({
        'Entitlements': [
            {'session_id': 7, 'expires_at': 1000, 'plan_id': 'p7d', 'updated_at': ''},
            {'session_id': 'x', 'expires_at': 1000, 'plan_id': 'p7d', 'updated_at': ''},
        ],
        'PendingCheckouts': [
            {'checkout_id': 'C1', 'session_id': 8, 'plan_id': 'p12h', 'created_at': 5, 'pay_url': 'u'},
            {'checkout_id': '', 'session_id': 8, 'plan_id': 'p12h', 'created_at': 5, 'pay_url': 'u'},
        ],
        'ProcessedPayments': [{'payment_id': 'P1', 'processed_at': 9}],
    })
    p = SheetsPersistence(ss)
    assert p.load_entitlements() == [(7, 1000, 'p7d')]
    assert p.load_pending() == [PendingCheckout('C1', 8, 'p12h', 5, 'u')]
    assert p.load_processed() == [('P1', 9)]
    assert p.entitlement_rows == {7: 2}


def test_save_entitlement_updates_known_row():
    ss, sheets = make_spreadsheet({
        'Entitlements': [{'session_id': 7, 'expires_at': 1, 'plan_id': 'p12h', 'updated_at': ''}],
    })
    p = SheetsPersistence(ss)
    p.load_entitlements()
    p.save_entitlement(Session(session_id=7, entitlement_expiry=2000, entitled_plan_id='p7d').entitlement_row())
    call = sheets['Entitlements'].update.call_args
    assert call.kwargs['range_name'] == 'A2:D2'
    assert call.kwargs['values'][0][:3] == [7, 2000, 'p7d']
    sheets['Entitlements'].append_row.assert_not_called()


def test_save_entitlement_appends_new_row():
    ss, sheets = make_spreadsheet()
    p = SheetsPersistence(ss)
    p.save_entitlement(Session(session_id=9, entitlement_expiry=2000, entitled_plan_id='p12h').entitlement_row())
    row = sheets['Entitlements'].append_row.call_args.args[0]
    assert row[:3] == [9, 2000, 'p12h']


def test_pending_rows():
    ss, sheets = make_spreadsheet()
    p = SheetsPersistence(ss)
    rec = PendingCheckout('C1', 8, 'p12h', 5, 'u')
    p.add_pending(rec.to_row())
    sheets['PendingCheckouts'].append_row.assert_called_once_with(['C1', 8, 'p12h', 5, 'u'])

    sheets['PendingCheckouts'].find.return_value = MagicMock(row=4)
    p.delete_pending('C1')
    sheets['PendingCheckouts'].delete_rows.assert_called_once_with(4)

    p.add_processed('P1', 77)
    sheets['ProcessedPayments'].append_row.assert_called_once_with(['P1', 77])

import sys
from decimal import Decimal
from pathlib import Path

import pytest

BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

from models.database import Base
from models.types import ExchangeAmount


def test_amounts_are_stored_at_exchange_precision():
    column_type = ExchangeAmount()
    assert column_type.process_bind_param(24.999999999999996, None) == Decimal("25.00000000")
    assert column_type.process_bind_param(0.000000015, None) == Decimal("0.00000002")
    assert column_type.process_bind_param(None, None) is None
    assert column_type.process_result_value(Decimal("40.00000000"), None) == 40.0


@pytest.mark.parametrize("value", [float("nan"), float("inf"), True, "forty"])
def test_invalid_amounts_are_refused(value):
    with pytest.raises(ValueError):
        ExchangeAmount().process_bind_param(value, None)


def test_execution_table_enforces_one_row_per_proposal():
    table = Base.metadata.tables["trade_executions"]
    unique_columns = {
        tuple(column.name for column in constraint.columns)
        for constraint in table.constraints
        if constraint.__class__.__name__ == "UniqueConstraint"
    }
    assert ("proposal_id",) in unique_columns
    assert ("client_order_id",) in unique_columns

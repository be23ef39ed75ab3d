import math

import pandas as pd
import pytest

from imputation import IMPUTED, OBSERVED, UNRESOLVABLE, impute_group_mean
from issues import RunIssues, UnresolvedGroupError


def _fees():
    return pd.DataFrame({
        "city": ["Nairobi"] * 6 + ["Nairobi"] * 2,
        "neighborhood": ["Kilimani"] * 4 + ["Karen"] * 2 + [None] * 2,
        "cleaning_fee": [1000, 0, None, 3000, 0, None, 500, None],
    })


def test_missing_and_zero_fees_take_group_average():
    result = impute_group_mean(_fees(), "cleaning_fee", ["city", "neighborhood"])

    kilimani = result[result["neighborhood"] == "Kilimani"]
    assert kilimani["cleaning_fee_imputed"].tolist() == [1000, 2000, 2000, 3000]
    assert kilimani["cleaning_fee_imputed_status"].tolist() == [OBSERVED, IMPUTED, IMPUTED, OBSERVED]


def test_group_without_observations_is_unresolvable_not_zero():
    issues = RunIssues()
    result = impute_group_mean(_fees(), "cleaning_fee", ["city", "neighborhood"], issues=issues)

    karen = result[result["neighborhood"] == "Karen"]
    assert karen["cleaning_fee_imputed"].isna().all()
    assert (karen["cleaning_fee_imputed_status"] == UNRESOLVABLE).all()

    assert len(issues.soft_errors) == 1
    error = issues.soft_errors[0]
    assert isinstance(error, UnresolvedGroupError)
    assert error.group == ("Nairobi", "Karen")
    assert error.rows == 2


def test_null_group_key_forms_its_own_group():
    result = impute_group_mean(_fees(), "cleaning_fee", ["city", "neighborhood"])

    unresolved = result[result["neighborhood"].isna()]
    assert unresolved["cleaning_fee_imputed"].tolist() == [500, 500]


@pytest.mark.parametrize("fees", [[100, 250, 75], [1.5, 2.5, 99.0]])
def test_valid_values_pass_through_unchanged(fees):
    frame = pd.DataFrame({"group": ["a", "a", "b"], "fee": fees})

    result = impute_group_mean(frame, "fee", ["group"], out_col="fee_filled")

    assert result["fee_filled"].tolist() == fees
    assert (result["fee_filled_status"] == OBSERVED).all()


def test_input_frame_is_not_mutated():
    frame = _fees()
    impute_group_mean(frame, "cleaning_fee", ["city", "neighborhood"])

    assert "cleaning_fee_imputed" not in frame.columns
    assert math.isnan(frame.loc[2, "cleaning_fee"])

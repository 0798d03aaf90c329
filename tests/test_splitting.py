"""Tests for the split policy engine."""

from decimal import Decimal

import pytest

from splitledger.exceptions import (
    InvalidPolicyInput,
    InvariantViolation,
    PercentageSumMismatch,
    ValidationError,
)
from splitledger.models import (
    Address,
    Identity,
    PercentageAllocation,
    Share,
    SplitPolicy,
)
from splitledger.splitting import (
    compute_shares,
    from_minor_units,
    to_minor_units,
    verify_share_sum,
)

ALICE = Identity(key="alice")
BOB = Identity(key="bob")
CAROL = Identity(key="carol")
DAVE = Identity(key="dave")


def pct(member, value: str) -> PercentageAllocation:
    return PercentageAllocation(member=member, percentage=Decimal(value))


class TestMinorUnits:
    """Test decimal <-> minor unit conversion."""

    def test_exact_amount(self):
        assert to_minor_units(Decimal("42.50")) == 4250

    def test_half_rounds_up(self):
        """ROUND_HALF_UP, not banker's rounding."""
        assert to_minor_units(Decimal("10.005")) == 1001
        assert to_minor_units(Decimal("10.015")) == 1002

    def test_other_exponent(self):
        assert to_minor_units(Decimal("1.5"), exponent=0) == 2
        assert to_minor_units(Decimal("1.2345"), exponent=3) == 1235

    def test_back_to_decimal(self):
        assert from_minor_units(1001) == Decimal("10.01")
        assert from_minor_units(-250) == Decimal("-2.50")


class TestEqualSplit:
    """Equal split divides over participants plus the creator."""

    def test_even_amount(self):
        result = compute_shares(10000, ALICE, ALICE, [BOB], SplitPolicy.EQUAL_SPLIT)

        assert [s.owed_minor for s in result.shares] == [5000]
        assert result.creator_share_minor == 5000

    def test_remainder_goes_to_last_participant(self):
        """100.00 over three people: 33.33, 33.33 and 33.34."""
        result = compute_shares(
            10000, ALICE, ALICE, [BOB, CAROL], SplitPolicy.EQUAL_SPLIT
        )

        assert result.creator_share_minor == 3333
        assert [s.owed_minor for s in result.shares] == [3333, 3334]
        assert result.creator_share_minor + sum(s.owed_minor for s in result.shares) == 10000

    def test_order_of_participants_decides_absorber(self):
        result = compute_shares(
            10000, ALICE, ALICE, [CAROL, BOB], SplitPolicy.EQUAL_SPLIT
        )

        assert result.shares[-1].debtor == BOB
        assert result.shares[-1].owed_minor == 3334

    @pytest.mark.parametrize("amount", [1, 2, 7, 99, 100, 12345, 99999])
    def test_sum_is_exact(self, amount):
        result = compute_shares(
            amount, ALICE, ALICE, [BOB, CAROL, DAVE], SplitPolicy.EQUAL_SPLIT
        )

        total = result.creator_share_minor + sum(s.owed_minor for s in result.shares)
        assert total == amount

    def test_one_cent_over_four_people(self):
        """Shares may be zero but never negative."""
        result = compute_shares(1, ALICE, ALICE, [BOB, CAROL, DAVE], SplitPolicy.EQUAL_SPLIT)

        assert result.creator_share_minor == 0
        assert [s.owed_minor for s in result.shares] == [0, 0, 1]

    def test_creator_other_than_payer(self):
        """Bob records a dinner Alice paid for; Carol owes Alice."""
        result = compute_shares(900, ALICE, BOB, [CAROL], SplitPolicy.EQUAL_SPLIT)

        assert [s.debtor for s in result.shares] == [CAROL]
        assert result.shares[0].owed_minor == 450
        assert result.creator_share_minor == 450


class TestPercentageSplit:
    """Percentage split rounds each share and balances on the last participant."""

    def test_thirds_sum_exactly(self):
        result = compute_shares(
            1000,
            ALICE,
            ALICE,
            [BOB, CAROL, DAVE],
            SplitPolicy.PERCENTAGE_SPLIT,
            [pct(BOB, "33.33"), pct(CAROL, "33.33"), pct(DAVE, "33.34")],
        )

        assert sum(s.owed_minor for s in result.shares) == 1000
        assert [s.owed_minor for s in result.shares] == [333, 333, 334]
        assert result.creator_share_minor == 0
        assert result.creator_percentage is None

    def test_shares_keep_percentages(self):
        result = compute_shares(
            2000,
            ALICE,
            ALICE,
            [BOB, CAROL],
            SplitPolicy.PERCENTAGE_SPLIT,
            [pct(BOB, "25"), pct(CAROL, "75")],
        )

        assert [s.owed_minor for s in result.shares] == [500, 1500]
        assert [s.percentage for s in result.shares] == [Decimal("25"), Decimal("75")]

    def test_creator_percentage(self):
        """Both halves of 10.01 round up; the last participant gives back a cent."""
        result = compute_shares(
            1001,
            ALICE,
            ALICE,
            [BOB],
            SplitPolicy.PERCENTAGE_SPLIT,
            [pct(ALICE, "50"), pct(BOB, "50")],
        )

        assert result.creator_share_minor == 501
        assert result.creator_percentage == Decimal("50")
        assert result.shares[0].owed_minor == 500

    def test_within_tolerance(self):
        """99.99 is close enough to 100; the residual lands on the last share."""
        result = compute_shares(
            1000,
            ALICE,
            ALICE,
            [BOB, CAROL, DAVE],
            SplitPolicy.PERCENTAGE_SPLIT,
            [pct(BOB, "33.33"), pct(CAROL, "33.33"), pct(DAVE, "33.33")],
        )

        assert [s.owed_minor for s in result.shares] == [333, 333, 334]

    def test_sum_mismatch(self):
        with pytest.raises(PercentageSumMismatch) as exc_info:
            compute_shares(
                1000,
                ALICE,
                ALICE,
                [BOB, CAROL],
                SplitPolicy.PERCENTAGE_SPLIT,
                [pct(BOB, "50"), pct(CAROL, "40")],
            )

        assert exc_info.value.total == Decimal("90")

    def test_sum_mismatch_is_a_validation_error(self):
        with pytest.raises(ValidationError):
            compute_shares(
                1000,
                ALICE,
                ALICE,
                [BOB],
                SplitPolicy.PERCENTAGE_SPLIT,
                [pct(BOB, "99.5")],
            )

    def test_missing_percentages(self):
        with pytest.raises(InvalidPolicyInput, match="required"):
            compute_shares(1000, ALICE, ALICE, [BOB], SplitPolicy.PERCENTAGE_SPLIT)

    def test_participant_without_percentage(self):
        with pytest.raises(InvalidPolicyInput, match="Missing percentage"):
            compute_shares(
                1000,
                ALICE,
                ALICE,
                [BOB, CAROL],
                SplitPolicy.PERCENTAGE_SPLIT,
                [pct(BOB, "100")],
            )

    def test_percentage_for_outsider(self):
        with pytest.raises(InvalidPolicyInput, match="not a participant"):
            compute_shares(
                1000,
                ALICE,
                ALICE,
                [BOB],
                SplitPolicy.PERCENTAGE_SPLIT,
                [pct(BOB, "50"), pct(DAVE, "50")],
            )

    def test_percentage_out_of_range(self):
        with pytest.raises(InvalidPolicyInput, match="between 0 and 100"):
            compute_shares(
                1000,
                ALICE,
                ALICE,
                [BOB, CAROL],
                SplitPolicy.PERCENTAGE_SPLIT,
                [pct(BOB, "150"), pct(CAROL, "-50")],
            )


class TestPayerCoversOthers:
    """Every participant owes the whole amount."""

    def test_each_share_is_full_amount(self):
        result = compute_shares(
            10000, ALICE, ALICE, [BOB, CAROL], SplitPolicy.PAYER_COVERS_OTHERS
        )

        assert [s.owed_minor for s in result.shares] == [10000, 10000]
        assert result.creator_share_minor == 0

    def test_requires_participants(self):
        with pytest.raises(InvalidPolicyInput):
            compute_shares(10000, ALICE, ALICE, [], SplitPolicy.PAYER_COVERS_OTHERS)


class TestSinglePayer:
    """The payer covers only themselves."""

    def test_no_shares(self):
        result = compute_shares(10000, ALICE, ALICE, [], SplitPolicy.SINGLE_PAYER)

        assert result.shares == []
        assert result.creator_share_minor == 0

    def test_rejects_participants(self):
        with pytest.raises(InvalidPolicyInput, match="cannot have participants"):
            compute_shares(10000, ALICE, ALICE, [BOB], SplitPolicy.SINGLE_PAYER)


class TestInputValidation:
    """Malformed input is rejected before anything is computed."""

    @pytest.mark.parametrize("amount", [0, -100])
    def test_non_positive_amount(self, amount):
        with pytest.raises(InvalidPolicyInput, match="positive"):
            compute_shares(amount, ALICE, ALICE, [BOB], SplitPolicy.EQUAL_SPLIT)

    def test_creator_as_participant(self):
        with pytest.raises(InvalidPolicyInput, match="Creator"):
            compute_shares(1000, ALICE, ALICE, [BOB, ALICE], SplitPolicy.EQUAL_SPLIT)

    def test_payer_as_participant(self):
        with pytest.raises(InvalidPolicyInput, match="Payer"):
            compute_shares(1000, ALICE, BOB, [CAROL, ALICE], SplitPolicy.EQUAL_SPLIT)

    def test_duplicate_participant(self):
        with pytest.raises(InvalidPolicyInput, match="more than once"):
            compute_shares(1000, ALICE, ALICE, [BOB, BOB], SplitPolicy.EQUAL_SPLIT)

    def test_duplicate_address_differs_only_in_case(self):
        with pytest.raises(InvalidPolicyInput, match="more than once"):
            compute_shares(
                1000,
                ALICE,
                ALICE,
                [Address(value="Bob@Example.com"), Address(value="bob@example.com ")],
                SplitPolicy.EQUAL_SPLIT,
            )

    def test_equal_split_needs_participants(self):
        with pytest.raises(InvalidPolicyInput, match="at least one participant"):
            compute_shares(1000, ALICE, ALICE, [], SplitPolicy.EQUAL_SPLIT)

    def test_percentages_with_other_policy(self):
        with pytest.raises(InvalidPolicyInput, match="only valid"):
            compute_shares(
                1000,
                ALICE,
                ALICE,
                [BOB],
                SplitPolicy.EQUAL_SPLIT,
                [pct(BOB, "100")],
            )

    def test_custom_member_key_merges_references(self):
        """An address mapped to the creator's identity counts as the creator."""

        def member_key(ref):
            if isinstance(ref, Address) and ref.value == "alice@example.com":
                return "alice"
            return ref.key if isinstance(ref, Identity) else f"address:{ref.value}"

        with pytest.raises(InvalidPolicyInput, match="Creator"):
            compute_shares(
                1000,
                ALICE,
                ALICE,
                [Address(value="alice@example.com")],
                SplitPolicy.EQUAL_SPLIT,
                member_key=member_key,
            )


class TestVerifyShareSum:
    """Post-condition check on stored shares."""

    def test_split_share_rows_are_aggregated(self):
        shares = [
            Share(debtor=BOB, owed_minor=300, settled=True),
            Share(debtor=BOB, owed_minor=200),
        ]

        verify_share_sum(1, 1000, SplitPolicy.EQUAL_SPLIT, shares, 500, "alice")

    def test_mismatch_raises(self):
        shares = [Share(debtor=BOB, owed_minor=400)]

        with pytest.raises(InvariantViolation) as exc_info:
            verify_share_sum(7, 1000, SplitPolicy.EQUAL_SPLIT, shares, 500, "alice")

        assert exc_info.value.expense_id == 7

    def test_payer_covers_others_per_debtor(self):
        shares = [
            Share(debtor=BOB, owed_minor=1000),
            Share(debtor=CAROL, owed_minor=999),
        ]

        with pytest.raises(InvariantViolation):
            verify_share_sum(1, 1000, SplitPolicy.PAYER_COVERS_OTHERS, shares, 0, "alice")

    def test_payer_owing_itself(self):
        shares = [Share(debtor=ALICE, owed_minor=500)]

        with pytest.raises(InvariantViolation, match="owes itself"):
            verify_share_sum(1, 1000, SplitPolicy.EQUAL_SPLIT, shares, 500, "alice")

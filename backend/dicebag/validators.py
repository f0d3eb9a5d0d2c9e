"""Request validators for the roll endpoint."""
from dicebag.config import settings
from dicebag.errors import DiceError, ErrorCode
from dicebag.logic.models import DieType, parse_die_type
from dicebag.protocol import RollRequest


def validate_die_types(request: RollRequest) -> dict[DieType, int]:
    """
    Map every requested die to its DieType.

    Raises INVALID_DIE_TYPE for an unsupported die.
    """
    parsed = {}
    for name, quantity in request.diceQuantities.items():
        die = parse_die_type(name)
        if die is None:
            raise DiceError(ErrorCode.INVALID_DIE_TYPE, f"Invalid die type: {name}")
        parsed[die] = quantity
    return parsed


def validate_quantities(quantities: dict[DieType, int]) -> None:
    """
    Check per-type and per-request caps.

    Raises INVALID_QUANTITY for a negative or over-cap count, a total over
    max_dice_per_roll, or a request with no dice at all.
    """
    for die, quantity in quantities.items():
        if quantity < 0 or quantity > settings.max_dice_per_type:
            raise DiceError(
                ErrorCode.INVALID_QUANTITY,
                f"Invalid quantity for {die.value}: must be 0-{settings.max_dice_per_type}",
            )

    total = sum(quantities.values())
    if total > settings.max_dice_per_roll:
        raise DiceError(
            ErrorCode.INVALID_QUANTITY,
            f"Maximum {settings.max_dice_per_roll} dice per roll allowed",
        )
    if total == 0:
        raise DiceError(ErrorCode.INVALID_QUANTITY, "At least one die must be rolled")


def validate_roll_request(request: RollRequest) -> dict[DieType, int]:
    """Run all validations; return the dice to roll, zero counts dropped."""
    quantities = validate_die_types(request)
    validate_quantities(quantities)
    return {die: quantity for die, quantity in quantities.items() if quantity > 0}

"""
Blood Type Compatibility
Determines which donor blood groups can give to which recipient blood groups.

COMPATIBILITY is the only copy of the ABO/Rh table; match ranking and alert
audience selection both go through ``can_donate``.
"""

from __future__ import annotations

from donorlink.exceptions import InvalidInputError
from donorlink.models.donor import BloodGroup

G = BloodGroup

# donor group -> recipient groups it can give to
COMPATIBILITY: dict[BloodGroup, frozenset[BloodGroup]] = {
    G.O_NEG: frozenset(BloodGroup),  # Universal donor
    G.O_POS: frozenset({G.O_POS, G.A_POS, G.B_POS, G.AB_POS}),
    G.A_NEG: frozenset({G.A_NEG, G.A_POS, G.AB_NEG, G.AB_POS}),
    G.A_POS: frozenset({G.A_POS, G.AB_POS}),
    G.B_NEG: frozenset({G.B_NEG, G.B_POS, G.AB_NEG, G.AB_POS}),
    G.B_POS: frozenset({G.B_POS, G.AB_POS}),
    G.AB_NEG: frozenset({G.AB_NEG, G.AB_POS}),
    G.AB_POS: frozenset({G.AB_POS}),  # Universal recipient
}


def parse_blood_group(value: BloodGroup | str) -> BloodGroup:
    """Coerce *value* to a ``BloodGroup``.

    Raises:
        InvalidInputError: if *value* is not one of the eight ABO/Rh groups.
    """
    if isinstance(value, BloodGroup):
        return value
    try:
        return BloodGroup(str(value).strip().upper())
    except ValueError:
        raise InvalidInputError(f"Unknown blood group: {value!r}") from None


def can_donate(donor_group: BloodGroup | str, recipient_group: BloodGroup | str) -> bool:
    """
    Check if a donor blood group can give to a recipient blood group.

    Args:
        donor_group: Donor's blood group (e.g. 'O-')
        recipient_group: Recipient's blood group (e.g. 'AB+')

    Returns:
        True if the directed edge donor -> recipient exists.
    """
    return parse_blood_group(recipient_group) in COMPATIBILITY[parse_blood_group(donor_group)]


def compatible_donor_groups(recipient_group: BloodGroup | str) -> list[BloodGroup]:
    """Blood groups that can donate to *recipient_group*, in table order."""
    recipient = parse_blood_group(recipient_group)
    return [donor for donor, recipients in COMPATIBILITY.items() if recipient in recipients]


def compatible_recipient_groups(donor_group: BloodGroup | str) -> list[BloodGroup]:
    """Blood groups that can receive from *donor_group*, in enum order."""
    recipients = COMPATIBILITY[parse_blood_group(donor_group)]
    return [group for group in BloodGroup if group in recipients]


def is_exact_match(donor_group: BloodGroup | str, recipient_group: BloodGroup | str) -> bool:
    return parse_blood_group(donor_group) == parse_blood_group(recipient_group)


def compatibility_label(donor_group: BloodGroup | str, recipient_group: BloodGroup | str) -> str:
    """Render the edge as ``"O- → AB+"``; refuses pairs that are not an edge."""
    donor = parse_blood_group(donor_group)
    recipient = parse_blood_group(recipient_group)
    if recipient not in COMPATIBILITY[donor]:
        raise InvalidInputError(f"{donor.value} cannot donate to {recipient.value}")
    return f"{donor.value} → {recipient.value}"

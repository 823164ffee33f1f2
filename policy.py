"""Who may change an album, and how loan status is normalized."""
from typing import Iterable, Optional


def same_identity(left: Optional[str], right: Optional[str]) -> bool:
    """Case-insensitive identity comparison; a missing side never matches."""
    if not left or not right:
        return False
    return left.casefold() == right.casefold()


def is_admin(requester: Optional[str], admins: Iterable[str] = ()) -> bool:
    return any(same_identity(requester, admin) for admin in admins)


def can_modify(owner: Optional[str], requester: Optional[str], admins: Iterable[str] = ()) -> bool:
    """Return True if `requester` may edit or delete an album owned by `owner`.

    Owners may always change their own albums; configured admins may change
    anyone's.
    """
    return same_identity(owner, requester) or is_admin(requester, admins)


def normalize_lent_to(value: Optional[str]) -> Optional[str]:
    """Blank loan values mean the album is in the collection."""
    if value is None or not value.strip():
        return None
    return value

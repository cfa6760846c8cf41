from mvpages.types import LockKind


def test_levels_follow_declaration_order():
    levels = [
        LockKind.NONE.level(),
        LockKind.SHARED.level(),
        LockKind.RESERVED.level(),
        LockKind.PENDING.level(),
        LockKind.EXCLUSIVE.level(),
    ]
    assert levels == [0, 1, 2, 3, 4]
    assert [kind.level() for kind in list(LockKind)] == levels


def test_reserved_level():
    assert LockKind.RESERVED.level() == 2


def test_ordering_matches_levels():
    assert LockKind.NONE < LockKind.SHARED < LockKind.RESERVED
    assert LockKind.PENDING < LockKind.EXCLUSIVE
    assert LockKind.SHARED.level() < LockKind.RESERVED.level()
    assert LockKind.PENDING.level() < LockKind.EXCLUSIVE.level()


def test_max_of_kinds_is_strongest():
    kinds = [LockKind.SHARED, LockKind.EXCLUSIVE, LockKind.RESERVED]
    strongest = max(kinds, key=LockKind.level)
    assert strongest is LockKind.EXCLUSIVE
    assert LockKind.EXCLUSIVE.level() == 4
    assert max(kinds) is strongest


def test_max_default_none():
    held = {}
    weakest = max(held.values(), key=LockKind.level, default=LockKind.NONE)
    assert weakest is LockKind.NONE
    assert LockKind.NONE.level() == 0
    assert LockKind.NONE.level() < LockKind.SHARED.level()
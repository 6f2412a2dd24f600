import re

import pytest

from procircle.core.config import settings
from procircle.services import codes


CODE_RE = re.compile(r"^PRC-[A-Z0-9]{1,3}-[A-Z2-7]{8}$")


def test_generated_code_has_prefix_initials_and_suffix() -> None:
    code = codes.generate_discount_code("Ada Lovelace")
    assert CODE_RE.match(code), code
    assert code.startswith("PRC-AL-")


def test_initials_are_capped_and_fall_back() -> None:
    assert codes.initials_for("jean claude van damme") == "JCV"
    assert codes.initials_for("") == "XX"
    assert codes.initials_for("   ") == "XX"
    assert codes.initials_for("-- !!") == "XX"


def test_suffixes_are_not_repeated() -> None:
    seen = {codes.random_suffix() for _ in range(200)}
    assert len(seen) == 200


def test_prefix_comes_from_settings(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(settings, "discount_code_prefix", "vip")
    assert codes.generate_discount_code("Grace Hopper").startswith("VIP-GH-")
    assert codes.generate_discount_code("Grace Hopper", prefix="club").startswith("CLUB-GH-")

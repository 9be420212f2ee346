import json
from pathlib import Path

import pytest

from badge_definitions import BADGES, BadgeConfigError, BadgeRegistry, badge_id_for


def test_default_registry_ships_case_badges():
    assert len(BADGES) == 8
    first = BADGES.get("first_case")
    assert first is not None
    assert first.requirement_type == "cases_solved"
    assert first.requirement_value == 1
    assert first.name_hi
    assert [badge.id for badge in BADGES if badge.requirement_type == "score_reached"] == [
        "cyber_guardian",
        "elite_agent",
    ]


def test_badge_id_is_derived_from_english_name():
    assert badge_id_for("Master Investigator") == "master_investigator"
    assert badge_id_for("  Week   Warrior ") == "week_warrior"


def test_custom_registry_validates(tmp_path: Path):
    data = [
        {
            "name_en": "Night Owl",
            "name_hi": "रात का उल्लू",
            "category": "achievement",
            "requirement_type": "special",
            "requirement_value": 0,
        },
        {"name_en": "Streak Starter", "category": "streak", "requirement_type": "streak_days", "requirement_value": 3},
    ]
    cfg = tmp_path / "badges.json"
    cfg.write_text(json.dumps(data, ensure_ascii=False), encoding="utf-8")

    registry = BadgeRegistry(cfg)
    assert [badge.id for badge in registry] == ["night_owl", "streak_starter"]
    assert registry.get("night_owl").name_hi == "रात का उल्लू"
    # Missing Hindi name falls back to English.
    assert registry.get("streak_starter").name_hi == "Streak Starter"
    assert registry.get("unknown") is None

    duplicate = tmp_path / "duplicate.json"
    duplicate.write_text(json.dumps([data[1], dict(data[1], name_en="streak  starter")]), encoding="utf-8")
    with pytest.raises(BadgeConfigError):
        BadgeRegistry(duplicate)


@pytest.mark.parametrize(
    "entry",
    [
        {"category": "streak", "requirement_type": "streak_days", "requirement_value": 3},
        {"name_en": "X", "category": "fun", "requirement_type": "streak_days", "requirement_value": 3},
        {"name_en": "X", "category": "streak", "requirement_type": "logins", "requirement_value": 3},
        {"name_en": "X", "category": "streak", "requirement_type": "streak_days", "requirement_value": "many"},
        {"name_en": "X", "category": "streak", "requirement_type": "streak_days", "requirement_value": -1},
    ],
)
def test_invalid_entries_are_rejected(tmp_path: Path, entry):
    cfg = tmp_path / "badges.json"
    cfg.write_text(json.dumps([entry]), encoding="utf-8")
    with pytest.raises(BadgeConfigError):
        BadgeRegistry(cfg)


def test_missing_file_and_wrong_shape(tmp_path: Path):
    with pytest.raises(FileNotFoundError):
        BadgeRegistry(tmp_path / "absent.json")

    cfg = tmp_path / "badges.json"
    cfg.write_text(json.dumps({"name_en": "Not a list"}), encoding="utf-8")
    with pytest.raises(BadgeConfigError):
        BadgeRegistry(cfg)

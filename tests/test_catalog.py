import pytest

from catalog import Catalog, CatalogValidationError, name_suffix, slugify


def _item(item_id, category="ACE inhibitor", **extra):
    entry = {
        "id": item_id,
        "primary_name": item_id.title(),
        "alternate_name": item_id,
        "category": category,
    }
    entry.update(extra)
    return entry


def test_default_catalog_loads_items_lessons_and_units(catalog):
    assert len(catalog) == 16
    assert "lisinopril" in catalog
    assert catalog.lesson("u1-l1").question_count == 12
    assert [unit.id for unit in catalog.units] == ["u1", "u2", "capstone"]
    assert catalog.unit("capstone").is_capstone
    assert catalog.unit_for_lesson("u2-l1").id == "u2"


def test_naming_family_groups_by_suffix(catalog):
    lisinopril = catalog.get_item("lisinopril")
    family = {item.id for item in catalog.naming_family(lisinopril)}
    assert family == {"lisinopril", "enalapril", "ramipril"}
    assert name_suffix("Pan") == ""


def test_items_by_ids_skips_unknown_and_duplicates(catalog):
    items = catalog.items_by_ids(["ramipril", "unknown", "ramipril", "losartan"])
    assert [item.id for item in items] == ["ramipril", "losartan"]


def test_unit_item_ids_and_mastery_lesson_id(catalog):
    assert catalog.unit_item_ids("u2") == [
        "atorvastatin",
        "simvastatin",
        "rosuvastatin",
        "omeprazole",
        "pantoprazole",
        "esomeprazole",
    ]
    assert catalog.unit("u1").mastery_lesson_id == "mastery-u1"


def test_lesson_unlocking_follows_previous_lesson(catalog):
    assert catalog.is_lesson_unlocked("u1", 0, {})
    assert not catalog.is_lesson_unlocked("u1", 1, {})
    assert catalog.is_lesson_unlocked("u1", 1, {"u1-l1": 70})
    assert not catalog.is_lesson_unlocked("u1", 1, {"u1-l1": 69})


def test_next_unit_unlocks_after_half_of_previous(catalog):
    assert not catalog.is_lesson_unlocked("u2", 0, {})
    assert catalog.is_lesson_unlocked("u2", 0, {"u1-l1": 80})


def test_capstone_needs_every_lesson_and_mastery_exam(catalog):
    lessons = {lesson_id: 90 for lesson_id in ("u1-l1", "u1-l2", "u2-l1", "u2-l2")}
    assert not catalog.is_lesson_unlocked("capstone", 0, lessons)
    lessons.update({"mastery-u1": 75, "mastery-u2": 70})
    assert catalog.is_lesson_unlocked("capstone", 0, lessons)


def test_mastery_exam_needs_every_unit_lesson(catalog):
    assert not catalog.is_mastery_unlocked("u1", {"u1-l1": 100})
    assert not catalog.is_mastery_unlocked("u1", {"u1-l1": 100, "u1-l2": 69})
    assert catalog.is_mastery_unlocked("u1", {"u1-l1": 100, "u1-l2": 70})
    assert catalog.capstone_unit().id == "capstone"


def test_star_eligibility_excludes_capstone(catalog):
    assert catalog.is_star_eligible("u1-l1")
    assert not catalog.is_star_eligible("capstone-final")
    assert not catalog.is_star_eligible("mastery-u1")


def test_unlocked_items_and_unit_progress(catalog):
    assert catalog.unlocked_item_ids({}) == ["lisinopril", "enalapril", "ramipril", "losartan", "valsartan"]
    progress = catalog.unit_progress({"u1-l1": 100})
    assert progress == {"u1": 50, "u2": 0, "capstone": 0}


def test_duplicate_item_ids_are_rejected():
    with pytest.raises(CatalogValidationError):
        Catalog.from_dict({"items": [_item("lisinopril"), _item("lisinopril")]})


def test_lesson_with_unknown_item_is_rejected():
    raw = {
        "items": [_item("lisinopril")],
        "lessons": [{"id": "l1", "item_ids": ["missing"]}],
    }
    with pytest.raises(CatalogValidationError):
        Catalog.from_dict(raw)


def test_intro_prompt_correct_answers_must_be_options():
    raw = {
        "items": [_item("lisinopril")],
        "lessons": [
            {
                "id": "l1",
                "item_ids": ["lisinopril"],
                "intro": [
                    {"concept_id": "c1", "kind": "indication", "prompt": "Why?", "options": ["A", "B"], "correct": ["C"]}
                ],
            }
        ],
    }
    with pytest.raises(CatalogValidationError):
        Catalog.from_dict(raw)


def test_missing_required_field_is_rejected():
    with pytest.raises(CatalogValidationError):
        Catalog.from_dict({"items": [{"id": "x", "primary_name": "X"}]})


def test_missing_file_raises(tmp_path):
    with pytest.raises(FileNotFoundError):
        Catalog.from_path(tmp_path / "nope.json")


def test_list_root_is_accepted():
    catalog = Catalog.from_dict([_item("lisinopril", uses=["Hypertension", ""])])
    assert catalog.get_item("lisinopril").uses == ("Hypertension",)


def test_slugify():
    assert slugify("Angiotensin II receptor blocker") == "angiotensin-ii-receptor-blocker"

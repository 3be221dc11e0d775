import pytest


def test_add_and_find(catalog):
    item = catalog.add_item("dune", 3, title="Dune")
    assert item.available_copies == 3

    found = catalog.find_item("dune")
    assert found.title == "Dune"
    assert found.total_copies == 3
    assert found.copies_on_loan == 0


def test_add_duplicate_item(catalog):
    catalog.add_item("dune", 1)
    with pytest.raises(ValueError, match="already exists"):
        catalog.add_item("dune", 2)
    assert len(catalog.list_items()) == 1


def test_add_rejects_bad_input(catalog):
    with pytest.raises(ValueError):
        catalog.add_item("", 1)
    with pytest.raises(ValueError):
        catalog.add_item("dune", -1)


def test_set_total_copies(catalog, ledger):
    catalog.add_item("dune", 1)
    ledger.try_reserve("dune")

    assert catalog.set_total_copies("dune", 4).available_copies == 3
    with pytest.raises(ValueError, match="on loan"):
        catalog.set_total_copies("dune", 0)
    assert catalog.set_total_copies("missing", 2) is None

import threading
from concurrent.futures import ThreadPoolExecutor

import pytest

from circulation.config import settings
from circulation.database import get_db_connection
from circulation.exceptions import TransientStorageError
from circulation.models import Actor, LoanError, Role


def _run_together(count, func):
    barrier = threading.Barrier(count)

    def worker(i):
        barrier.wait()
        return func(i)

    with ThreadPoolExecutor(max_workers=count) as pool:
        return list(pool.map(worker, range(count)))


@pytest.mark.parametrize("requests,copies", [(12, 5), (8, 1), (4, 6)])
def test_concurrent_borrows_never_overbook(loans, catalog, ledger, requests, copies):
    catalog.add_item("dune", copies)
    members = [Actor(id=f"member-{i}", role=Role.MEMBER) for i in range(requests)]

    results = _run_together(requests, lambda i: loans.create_loan("dune", members[i]))

    expected = min(requests, copies)
    assert sum(1 for r in results if r.ok) == expected
    assert sum(1 for r in results if r.error is LoanError.ITEM_UNAVAILABLE) == requests - expected
    assert catalog.find_item("dune").copies_on_loan == expected
    assert len(loans.list_loans(item_id="dune")) == expected
    ledger.verify()


def test_concurrent_approvals_release_once(loans, catalog, ledger, alice):
    catalog.add_item("dune", 2)
    loan = loans.create_loan("dune", alice).loan
    staff = [Actor(id=f"staff-{i}", role=Role.LIBRARIAN) for i in range(6)]

    results = _run_together(len(staff), lambda i: loans.approve_return(loan.id, staff[i]))

    assert sum(1 for r in results if r.ok) == 1
    assert all(r.error is LoanError.INVALID_STATE for r in results if not r.ok)
    assert catalog.find_item("dune").copies_on_loan == 0
    ledger.verify()


def test_borrows_and_returns_interleaved(loans, catalog, ledger, librarian):
    catalog.add_item("dune", 3)
    members = [Actor(id=f"member-{i}", role=Role.MEMBER) for i in range(10)]
    seed = [loans.create_loan("dune", members[i]).loan for i in range(3)]

    def work(i):
        if i < 3:
            return loans.direct_return(seed[i].id, librarian)
        return loans.create_loan("dune", members[i])

    _run_together(10, work)

    item = catalog.find_item("dune")
    assert 0 <= item.copies_on_loan <= item.total_copies
    ledger.verify()


def test_lock_timeout_is_transient_and_leaves_no_state(loans, catalog, db_file, alice, monkeypatch):
    catalog.add_item("dune", 1)
    monkeypatch.setattr(settings, "db_timeout", 0.05)

    blocker = get_db_connection(db_file)
    blocker.execute("BEGIN IMMEDIATE")
    try:
        with pytest.raises(TransientStorageError):
            loans.create_loan("dune", alice)
    finally:
        blocker.execute("ROLLBACK")
        blocker.close()

    assert catalog.find_item("dune").copies_on_loan == 0
    assert loans.list_loans() == []
    # Safe to retry once the lock is gone
    assert loans.create_loan("dune", alice).ok

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor

from conftest import local_storage
from taxflow.deduplication import DuplicateCleaner, dedup_key, find_duplicates, find_existing_duplicate, resolve
from taxflow.repositories import InMemoryRecordsRepository


def _record(record_id, created_at, *, status="draft", **fields):
    row = {"id": record_id, "owner_id": "acct_1", "target_id": "client_1", "status": status, "created_at": created_at}
    row.update(fields)
    return row


def _records():
    return [
        _record("r3", "2026-03-03", atcud="ABCD-1"),
        _record("r1", "2026-03-01", atcud="ABCD-1"),
        _record("r2", "2026-03-02", atcud="ABCD-1", status="validated"),
        _record("r4", "2026-03-04", supplier_nif="501234560", document_number="FT 1/9", document_date="2026-02-28"),
        _record("r5", "2026-03-01", supplier_nif="501234560", document_number="FT 1/9", document_date="2026-02-28"),
        _record("r6", "2026-03-05", supplier_nif="501234560", document_number="FT 1/9"),
        _record("r7", "2026-03-06", gross_amount=100),
        _record("r8", "2026-03-06", gross_amount=100),
    ]


def test_dedup_key_prefers_atcud():
    assert dedup_key({"atcud": " X-1 ", "supplier_nif": "1", "document_number": "2", "document_date": "3"}) == "atcud:X-1"
    assert dedup_key({"supplier_nif": "1", "document_number": "2", "document_date": "3"}) == "doc:1|2|3"
    assert dedup_key({"supplier_nif": "1", "document_number": "2"}) is None
    assert dedup_key({"gross_amount": 10}) is None


def test_groups_keep_validated_member_else_earliest():
    groups = find_duplicates(_records())
    assert [g.key for g in groups] == ["atcud:ABCD-1", "doc:501234560|FT 1/9|2026-02-28"]

    atcud_group, doc_group = groups
    assert [m["id"] for m in atcud_group.members] == ["r1", "r2", "r3"]
    assert atcud_group.keep_id == "r2"
    assert atcud_group.delete_ids == ["r1", "r3"]
    assert doc_group.keep_id == "r5"
    assert doc_group.delete_ids == ["r4"]


def test_equal_created_at_ties_break_on_id():
    groups = find_duplicates([_record("b", "2026-01-01", atcud="Z"), _record("a", "2026-01-01", atcud="Z")])
    assert groups[0].keep_id == "a"


def test_detection_is_stable_and_resolution_converges():
    records = _records()
    first = [g.to_dict() for g in find_duplicates(records)]
    second = [g.to_dict() for g in find_duplicates(records)]
    shuffled = [g.to_dict() for g in find_duplicates(list(reversed(records)))]
    assert first == second
    assert sorted(shuffled, key=lambda g: g["key"]) == sorted(first, key=lambda g: g["key"])

    doomed = {x for g in find_duplicates(records) for x in resolve(g).delete_ids}
    remaining = [r for r in records if r["id"] not in doomed]
    assert find_duplicates(remaining) == []


def test_find_existing_duplicate_names_the_reason():
    existing = _records()
    match = find_existing_duplicate({"id": "new", "atcud": "ABCD-1"}, existing)
    assert match is not None
    assert match.existing_id == "r1"
    assert match.reason == "duplicate ATCUD ABCD-1"

    doc_match = find_existing_duplicate(
        {"id": "new", "supplier_nif": "501234560", "document_number": "FT 1/9", "document_date": "2026-02-28"},
        existing,
    )
    assert doc_match.existing_id == "r5"
    assert find_existing_duplicate({"id": "new", "gross_amount": 100}, existing) is None


def test_cleaner_deletes_records_then_removes_assets(tmp_path):
    storage = local_storage(tmp_path)
    repo = InMemoryRecordsRepository({})
    for row in _records():
        if row["id"] in {"r1", "r3"}:
            row["file_path"] = storage.put_object(
                owner_id="acct_1",
                object_id=row["id"],
                filename=f"{row['id']}.pdf",
                content_bytes=b"%PDF",
            )
        repo.insert(record=row)

    cleaner = DuplicateCleaner(repo, storage, executor=ThreadPoolExecutor(max_workers=1))
    resolutions = [resolve(g) for g in find_duplicates(repo.list_for_owner(owner_id="acct_1"))]
    report = cleaner.delete(owner_id="acct_1", resolutions=resolutions)
    cleaner.wait_for_cleanup(timeout=5)

    assert sorted(report.deleted_ids) == ["r1", "r3", "r4"]
    assert report.assets_scheduled == 2
    assert report.cleanup_errors == []
    assert repo.get(record_id="r2") is not None
    assert not list(tmp_path.rglob("*.pdf"))


def test_asset_failures_do_not_change_deletion_result():
    class FailingStorage:
        def delete_object(self, *, storage_uri):
            raise OSError("bucket offline")

    repo = InMemoryRecordsRepository({})
    repo.insert(record=_record("a", "2026-01-01", atcud="Z", file_path="object://s3/b/k1"))
    repo.insert(record=_record("b", "2026-01-02", atcud="Z", file_path="object://s3/b/k2"))

    cleaner = DuplicateCleaner(repo, FailingStorage())
    (group,) = find_duplicates(repo.list_for_owner(owner_id="acct_1"))
    report = cleaner.delete(owner_id="acct_1", resolutions=[resolve(group)])
    cleaner.wait_for_cleanup(timeout=5)

    assert report.deleted_ids == ["b"]
    assert report.cleanup_errors == [{"storage_uri": "object://s3/b/k2", "error": "bucket offline"}]
    assert repo.get(record_id="b") is None


def test_cleaner_ignores_other_owners_records():
    repo = InMemoryRecordsRepository({})
    repo.insert(record=_record("a", "2026-01-01", atcud="Z"))
    foreign = _record("b", "2026-01-02", atcud="Z")
    foreign["owner_id"] = "acct_2"
    repo.insert(record=foreign)

    (group,) = find_duplicates([*repo.list_for_owner(owner_id="acct_1"), foreign])
    report = DuplicateCleaner(repo, None).delete(owner_id="acct_1", resolutions=[resolve(group)])
    assert report.deleted_ids == []
    assert repo.get(record_id="b") is not None

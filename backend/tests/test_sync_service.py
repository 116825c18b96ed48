from __future__ import annotations

import datetime as dt

import pytest
from sqlalchemy import select

from fakes import FakeStorage
from receiptsync.core.errors import (
    DestinationConfigError,
    DestinationWriteError,
    FetchError,
    NotFoundError,
    ReauthRequiredError,
)
from receiptsync.models.enums import (
    ConnectionStatus,
    ConnectionType,
    DestinationStatus,
    DestinationType,
    ExportColumn,
    ExportFormat,
    ExportJobKind,
    ExportJobStatus,
    PlanType,
    ReceiptStatus,
    SyncedReceiptStatus,
)
from receiptsync.models.tables import Connection, Destination, ExportJob, Organisation, Receipt, SyncedReceipt
from receiptsync.services import sync_service as sync_module
from receiptsync.services.connection_service import connection_service
from receiptsync.services.export_service import ReceiptFilter
from receiptsync.services.sync_service import InlineExport, QueuedJob, SyncResult, SyncService, failure_summary


class FakeWriter:
    def __init__(self, fail_ids=(), reauth_after=None, raise_for=None):
        self.fail_ids = set(fail_ids)
        self.raise_for = dict(raise_for or {})
        self.reauth_after = reauth_after
        self.written = []
        self.closed = False

    async def upsert(self, receipt, external_id=None):
        if self.reauth_after is not None and len(self.written) >= self.reauth_after:
            raise ReauthRequiredError("Notion authorization failed: unauthorized")
        if receipt.id in self.fail_ids:
            raise DestinationWriteError("row rejected", receipt_id=receipt.id, retryable=False)
        if receipt.id in self.raise_for:
            raise self.raise_for[receipt.id]
        self.written.append((receipt.id, external_id))
        return f"ext-{receipt.id}"

    async def aclose(self):
        self.closed = True


async def _setup(session, n_receipts=3, plan=PlanType.PRO):
    org = Organisation(name="Acme Ltd", plan=plan)
    session.add(org)
    await session.commit()
    conn = await connection_service.create(session, org.id, ConnectionType.NOTION, "secret_tok", {"workspace_id": "ws"})
    dest = Destination(
        org_id=org.id,
        type=DestinationType.NOTION,
        status=DestinationStatus.RUNNING,
        configuration={"database_id": "db-1"},
        connection_id=conn.id,
    )
    session.add(dest)
    receipts = []
    for i in range(n_receipts):
        r = Receipt(
            org_id=org.id,
            status=ReceiptStatus.EXTRACTED,
            original_image_key=f"{org.id}/r{i}/img.png",
            vendor=f"Vendor {i}",
            amount=10.0 + i,
            currency="USD",
            receipt_date=dt.date(2024, 1, 1 + i),
            category="food",
            extraction_result={"vendor": f"Vendor {i}"},
        )
        session.add(r)
        receipts.append(r)
    await session.commit()
    return org, conn, dest, receipts


def _service(writer=None, storage=None):
    return SyncService(storage=storage or FakeStorage(), writer_factory=lambda dest, conn: writer)


@pytest.mark.asyncio
async def test_export_routes_inline_at_threshold_and_queues_above(session_factory, monkeypatch):
    monkeypatch.setattr(sync_module.settings, "SYNC_EXPORT_THRESHOLD", 3, raising=False)
    svc = _service()
    dispatched = []
    async with session_factory() as session:
        org, _, _, receipts = await _setup(session, n_receipts=3)
        inline = await svc.route_export(
            session, org, ExportFormat.CSV, [ExportColumn.VENDOR], ReceiptFilter(), dispatch=dispatched.append
        )
        assert isinstance(inline, InlineExport)
        assert inline.receipt_count == 3
        assert inline.filename == "receipts-acme-ltd.csv"
        assert dispatched == []

        session.add(Receipt(org_id=org.id, status=ReceiptStatus.EXTRACTED, original_image_key="k4", vendor="V4"))
        await session.commit()
        queued = await svc.route_export(
            session, org, ExportFormat.XLSX, [ExportColumn.VENDOR], ReceiptFilter(), dispatch=dispatched.append
        )
        assert isinstance(queued, QueuedJob)
        assert queued.receipt_count == 4
        assert dispatched == [queued.job_id]

        job = await session.get(ExportJob, queued.job_id)
    assert job.status == ExportJobStatus.QUEUED
    assert job.kind == ExportJobKind.FILE
    assert job.format == ExportFormat.XLSX
    assert job.configuration["columns"] == ["vendor"]


@pytest.mark.asyncio
async def test_inline_export_with_no_matches_is_not_found(session_factory):
    svc = _service()
    async with session_factory() as session:
        org, _, _, _ = await _setup(session, n_receipts=0)
        with pytest.raises(NotFoundError):
            await svc.route_export(session, org, ExportFormat.CSV, [ExportColumn.VENDOR], ReceiptFilter())


@pytest.mark.asyncio
async def test_destination_sync_routes_by_threshold(session_factory, monkeypatch):
    monkeypatch.setattr(sync_module.settings, "SYNC_EXPORT_THRESHOLD", 2, raising=False)
    writer = FakeWriter()
    svc = _service(writer)
    dispatched = []
    async with session_factory() as session:
        org, _, dest, receipts = await _setup(session, n_receipts=3)
        queued = await svc.route_destination_sync(session, org.id, dest.id, ReceiptFilter(), dispatch=dispatched.append)
        assert isinstance(queued, QueuedJob)
        job = await session.get(ExportJob, queued.job_id)
        assert job.kind == ExportJobKind.DESTINATION
        assert job.destination_id == dest.id
        assert writer.written == []

        receipts[0].status = ReceiptStatus.ARCHIVED
        await session.commit()
        inline = await svc.route_destination_sync(session, org.id, dest.id, ReceiptFilter(), dispatch=dispatched.append)
    assert isinstance(inline, SyncResult)
    assert inline.receipt_count == 2
    assert dispatched == [queued.job_id]


@pytest.mark.asyncio
async def test_partial_write_failure_keeps_going(session_factory):
    async with session_factory() as session:
        org, _, dest, receipts = await _setup(session, n_receipts=3)
        writer = FakeWriter(fail_ids={receipts[1].id})
        result = await _service(writer).sync_destination(session, org.id, dest.id)

        assert result.receipt_count == 3
        assert result.succeeded == 2
        assert result.failed == 1
        assert result.error == f"1 of 3 receipts failed to sync: {receipts[1].id}: row rejected"
        assert dest.error == result.error
        assert dest.last_synced_at is not None
        assert writer.closed is True

        rows = {
            r.receipt_id: r
            for r in (await session.execute(select(SyncedReceipt).where(SyncedReceipt.destination_id == dest.id)))
            .scalars()
            .all()
        }
        assert rows[receipts[0].id].status == SyncedReceiptStatus.SYNCED
        assert rows[receipts[0].id].external_id == f"ext-{receipts[0].id}"
        assert rows[receipts[1].id].status == SyncedReceiptStatus.FAILED
        assert rows[receipts[1].id].error == "row rejected"

        # a clean re-run reuses external ids and clears the destination error
        retry = FakeWriter()
        again = await _service(retry).sync_destination(session, org.id, dest.id)
    assert again.failed == 0
    assert again.error is None
    assert dest.error is None
    assert (receipts[0].id, f"ext-{receipts[0].id}") in retry.written


@pytest.mark.asyncio
async def test_unexpected_write_errors_are_recorded_per_receipt(session_factory):
    async with session_factory() as session:
        org, _, dest, receipts = await _setup(session, n_receipts=3)
        writer = FakeWriter(
            raise_for={
                receipts[0].id: FetchError("Google token request failed: 503", upstream_status=503),
                receipts[1].id: KeyError("id"),
            }
        )
        result = await _service(writer).sync_destination(session, org.id, dest.id)

        assert (result.succeeded, result.failed) == (1, 2)
        assert [w[0] for w in writer.written] == [receipts[2].id]
        assert dest.last_synced_at is not None
        assert dest.error.startswith("2 of 3 receipts failed to sync")
        assert "Google token request failed: 503" in dest.error

        rows = (
            await session.execute(select(SyncedReceipt).where(SyncedReceipt.destination_id == dest.id))
        ).scalars().all()
        failed = {r.receipt_id: r.error for r in rows if r.status == SyncedReceiptStatus.FAILED}
    assert failed[receipts[0].id] == "Google token request failed: 503"
    assert failed[receipts[1].id] == "'id'"


@pytest.mark.asyncio
async def test_auth_failure_aborts_batch_and_flags_connection(session_factory):
    async with session_factory() as session:
        org, conn, dest, receipts = await _setup(session, n_receipts=3)
        writer = FakeWriter(reauth_after=1)
        with pytest.raises(ReauthRequiredError) as exc_info:
            await _service(writer).sync_destination(session, org.id, dest.id)
        assert exc_info.value.connection_id == conn.id
        assert len(writer.written) == 1
        assert dest.error.startswith("Connection needs re-authorisation")

        refreshed = await session.get(Connection, conn.id)
        assert refreshed.status == ConnectionStatus.NEEDS_REAUTH
        assert refreshed.first_failed_at is not None

        synced = (
            await session.execute(
                select(SyncedReceipt).where(
                    SyncedReceipt.destination_id == dest.id, SyncedReceipt.status == SyncedReceiptStatus.SYNCED
                )
            )
        ).scalars().all()
        assert [s.receipt_id for s in synced] == [writer.written[0][0]]

        # later syncs stop before writing anything
        untouched = FakeWriter()
        with pytest.raises(ReauthRequiredError):
            await _service(untouched).sync_destination(session, org.id, dest.id)
    assert untouched.written == []


@pytest.mark.asyncio
async def test_revoked_connection_blocks_sync(session_factory):
    async with session_factory() as session:
        org, conn, dest, _ = await _setup(session)
        await connection_service.revoke(session, org.id, conn.id)
        with pytest.raises(ReauthRequiredError):
            await _service(FakeWriter()).sync_destination(session, org.id, dest.id)
        assert dest.error == "Connection has been revoked"


@pytest.mark.asyncio
async def test_paused_and_archived_destinations_do_not_sync(session_factory):
    async with session_factory() as session:
        org, _, dest, _ = await _setup(session)
        dest.status = DestinationStatus.PAUSED
        await session.commit()
        with pytest.raises(DestinationConfigError):
            await _service(FakeWriter()).sync_destination(session, org.id, dest.id)

        dest.status = DestinationStatus.ARCHIVED
        await session.commit()
        with pytest.raises(NotFoundError):
            await _service(FakeWriter()).sync_destination(session, org.id, dest.id)


@pytest.mark.asyncio
async def test_single_receipt_fans_out_to_running_destinations(session_factory):
    async with session_factory() as session:
        org, conn, dest, receipts = await _setup(session, n_receipts=1)
        stale = Connection(
            org_id=org.id,
            type=ConnectionType.NOTION,
            status=ConnectionStatus.NEEDS_REAUTH,
            encrypted_credential=connection_service.cipher.encrypt("old"),
            provider_metadata={"workspace_id": "ws2"},
        )
        session.add(stale)
        await session.flush()
        blocked = Destination(
            org_id=org.id,
            type=DestinationType.NOTION,
            configuration={"database_id": "db-2"},
            connection_id=stale.id,
        )
        paused = Destination(
            org_id=org.id,
            type=DestinationType.NOTION,
            status=DestinationStatus.PAUSED,
            configuration={"database_id": "db-3"},
            connection_id=conn.id,
        )
        session.add_all([blocked, paused])
        await session.commit()

        writer = FakeWriter()
        results = await _service(writer).sync_receipt_to_destinations(session, receipts[0].id)
        assert list(results) == [dest.id]
        assert results[dest.id].succeeded == 1
        assert blocked.error == "Connection needs re-authorisation"

        receipts[0].status = ReceiptStatus.ARCHIVED
        await session.commit()
        assert await _service(writer).sync_receipt_to_destinations(session, receipts[0].id) == {}


@pytest.mark.asyncio
async def test_file_job_renders_to_storage(session_factory, monkeypatch):
    monkeypatch.setattr(sync_module.settings, "SYNC_EXPORT_THRESHOLD", 1, raising=False)
    storage = FakeStorage()
    svc = _service(storage=storage)
    async with session_factory() as session:
        org, _, _, _ = await _setup(session, n_receipts=2)
        queued = await svc.route_export(
            session, org, ExportFormat.CSV, [ExportColumn.DATE, ExportColumn.VENDOR], ReceiptFilter(), dispatch=lambda _id: None
        )
        job = await svc.run_export_job(session, queued.job_id)
        assert job.status == ExportJobStatus.COMPLETED
        assert job.started_at is not None and job.completed_at is not None
        assert job.result_key.startswith(f"{org.id}/exports/{job.id}/")
        body = storage.objects[job.result_key].decode()
        assert body.splitlines() == ["Date,Vendor", "2024-01-01,Vendor 0", "2024-01-02,Vendor 1"]

        # redelivery of a finished job is a no-op
        again = await svc.run_export_job(session, queued.job_id)
        assert again.status == ExportJobStatus.COMPLETED
        assert await svc.run_export_job(session, "missing") is None


@pytest.mark.asyncio
async def test_destination_job_failure_marks_job_failed(session_factory):
    async with session_factory() as session:
        org, _, dest, _ = await _setup(session)
        dest.status = DestinationStatus.PAUSED
        job = ExportJob(
            org_id=org.id,
            kind=ExportJobKind.DESTINATION,
            destination_id=dest.id,
            configuration={"filters": ReceiptFilter().to_dict()},
            receipt_count=3,
        )
        session.add(job)
        await session.commit()

        done = await _service(FakeWriter()).run_export_job(session, job.id)
    assert done.status == ExportJobStatus.FAILED
    assert "paused" in done.error
    assert done.completed_at is not None


def test_failure_summary_truncates_long_lists():
    errors = [f"r{i}: boom" for i in range(7)]
    summary = failure_summary(7, 10, errors)
    assert summary.startswith("7 of 10 receipts failed to sync: r0: boom; r1: boom")
    assert "r5: boom" not in summary
    assert summary.endswith("(+2 more)")


@pytest.mark.asyncio
async def test_destination_job_with_partial_failure_completes(session_factory):
    async with session_factory() as session:
        org, _, dest, receipts = await _setup(session)
        job = ExportJob(
            org_id=org.id,
            kind=ExportJobKind.DESTINATION,
            destination_id=dest.id,
            configuration={"filters": ReceiptFilter().to_dict()},
            receipt_count=3,
        )
        session.add(job)
        await session.commit()

        done = await _service(FakeWriter(fail_ids={receipts[0].id})).run_export_job(session, job.id)
    assert done.status == ExportJobStatus.COMPLETED
    assert done.error is None
    assert done.receipt_count == 3
    assert dest.error == f"1 of 3 receipts failed to sync: {receipts[0].id}: row rejected"


@pytest.mark.asyncio
async def test_fan_out_continues_past_a_failing_destination(session_factory):
    async with session_factory() as session:
        org, conn, dest, receipts = await _setup(session, n_receipts=1)
        broken = Destination(
            org_id=org.id,
            type=DestinationType.NOTION,
            status=DestinationStatus.RUNNING,
            configuration={"database_id": "db-broken"},
            connection_id=conn.id,
        )
        session.add(broken)
        await session.commit()

        writer = FakeWriter()

        def factory(d, c):
            if d.id == broken.id:
                raise DestinationConfigError("Destination configuration is invalid")
            return writer

        results = await _service().sync_receipt_to_destinations(session, receipts[0].id, writer_factory=factory)
    assert list(results) == [dest.id]
    assert results[dest.id].succeeded == 1
    assert writer.written == [(receipts[0].id, None)]

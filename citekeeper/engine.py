"""Wires the engine components around one database."""

from __future__ import annotations

from dataclasses import dataclass

from citekeeper.db.database import Database
from citekeeper.discovery.discoverer import ReplacementDiscoverer
from citekeeper.discovery.oracle import KnowledgeOracle, PerplexityOracle
from citekeeper.gate import ConfidenceGate
from citekeeper.jobs.coordinator import JobCoordinator
from citekeeper.jobs.queue import ChunkQueue
from citekeeper.jobs.worker import ChunkWorker
from citekeeper.patcher.patcher import ContentPatcher
from citekeeper.prober import HealthProber
from citekeeper.revisions import RevisionStore


@dataclass
class Engine:
    db: Database
    prober: HealthProber
    gate: ConfidenceGate
    revisions: RevisionStore
    patcher: ContentPatcher
    discoverer: ReplacementDiscoverer
    queue: ChunkQueue
    coordinator: JobCoordinator
    worker: ChunkWorker


def build_engine(
    db: Database,
    oracle: KnowledgeOracle | None = None,
    prober: HealthProber | None = None,
    threshold: float | None = None,
    chunk_size: int | None = None,
) -> Engine:
    prober = prober or HealthProber(db)
    gate = ConfidenceGate(db, threshold)
    revisions = RevisionStore(db, gate)
    patcher = ContentPatcher(db, revisions, gate)
    discoverer = ReplacementDiscoverer(db, oracle or PerplexityOracle(), prober)
    queue = ChunkQueue()
    coordinator = JobCoordinator(db, queue, chunk_size)
    worker = ChunkWorker(db, discoverer, gate, patcher, queue)
    queue.bind(worker.run)
    return Engine(
        db=db,
        prober=prober,
        gate=gate,
        revisions=revisions,
        patcher=patcher,
        discoverer=discoverer,
        queue=queue,
        coordinator=coordinator,
        worker=worker,
    )

from taxflow.repositories.client_access import InMemoryClientAccessRepository, PostgresClientAccessRepository
from taxflow.repositories.queue_items import InMemoryQueueItemsRepository, PostgresQueueItemsRepository
from taxflow.repositories.records import InMemoryRecordsRepository, PostgresRecordsRepository
from taxflow.repositories.sync_jobs import InMemorySyncJobsRepository, PostgresSyncJobsRepository

__all__ = [
    "InMemoryClientAccessRepository",
    "PostgresClientAccessRepository",
    "InMemoryQueueItemsRepository",
    "PostgresQueueItemsRepository",
    "InMemoryRecordsRepository",
    "PostgresRecordsRepository",
    "InMemorySyncJobsRepository",
    "PostgresSyncJobsRepository",
]

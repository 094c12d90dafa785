from collections.abc import Mapping
import logging

from sqlalchemy.ext.asyncio import AsyncSession

from ingestgate.mappings import SCRUB_FIELD_MAPPINGS, FieldMapping, map_fields, validate_mappings
from ingestgate.schemas import RunContext, ValidationResult
from ingestgate.store import insert_scrub_record


logger = logging.getLogger(__name__)


class ScrubRouter:
    def __init__(self, mappings: dict[str, tuple[FieldMapping, ...]] | None = None) -> None:
        self.mappings = SCRUB_FIELD_MAPPINGS if mappings is None else mappings
        validate_mappings(self.mappings)

    async def route(
        self,
        db: AsyncSession,
        target_collection: str,
        record: Mapping[str, object],
        result: ValidationResult,
        run: RunContext,
        original_payload: object,
    ) -> bool:
        fields = self.mappings.get(target_collection)
        if fields is None:
            logger.warning(
                "scrub route skipped: unknown collection",
                extra={"target_collection": target_collection, "run_id": run.run_id},
            )
            return False

        mapped = map_fields(fields, record)
        if not mapped:
            logger.warning(
                "scrub route skipped: no mapped fields",
                extra={"target_collection": target_collection, "run_id": run.run_id},
            )
            return False

        try:
            await insert_scrub_record(
                db,
                target_collection=target_collection,
                mapped_fields=mapped,
                result=result,
                original_data=original_payload,
                job_run_id=run.run_id,
            )
        except Exception:
            # A broken audit write must not abort the batch that triggered it.
            logger.exception(
                "scrub insert failed",
                extra={"target_collection": target_collection, "run_id": run.run_id, "errors": list(result.errors)},
            )
            return False
        return True

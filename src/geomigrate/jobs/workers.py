"""Analyze, match and generate runners.

These iterate a bounded item list, reporting progress after each item.
Analysis swallows per-page failures; matching and generation propagate
them and fail the job.
"""

from __future__ import annotations

import logging

from geomigrate.jobs.lifecycle import Control, JobRunner
from geomigrate.jobs.payloads import AnalyzeJobPayload, GenerateJobPayload, MatchJobPayload
from geomigrate.jobs.progress import ItemProgress
from geomigrate.store.models import Draft, Job, JobType, PageStatus

logger = logging.getLogger(__name__)


class AnalyzeRunner(JobRunner):
    job_type = JobType.ANALYZE

    async def execute(self, job: Job) -> None:
        payload = AnalyzeJobPayload.model_validate(job.payload)
        if payload.page_ids is None:
            pages = await self.db(
                self.store.list_pages, payload.project_id, status=PageStatus.CRAWLED
            )
        else:
            pages = await self.db(
                self.store.list_pages, payload.project_id, page_ids=payload.page_ids
            )
        pages = [page for page in pages if page.analysis_text.strip()]
        total = len(pages)

        await self.db(self.store.update_job, job.id, total_items=total)
        await self.db(
            self.store.patch_job_metadata,
            job.id,
            ItemProgress(status_message=f"Analyzing {total} page(s)...").to_metadata(),
        )

        processed = failed = 0
        for page in pages:
            control = await self.check_control(job.id)
            if control is Control.CANCELLED:
                return
            if control is Control.PAUSE:
                await self.pause(job.id)
                return

            try:
                analysis = await self.ctx.analyzer.analyze_page(page.id, page.analysis_text)
                await self.db(
                    self.store.update_page_analysis,
                    page.id,
                    topics=analysis.topics,
                    quality_score=analysis.quality_score,
                    embedding=analysis.embedding,
                )
            except Exception as exc:  # per-page; the rest of the batch still runs
                failed += 1
                message = str(exc) or exc.__class__.__name__
                logger.warning("Analysis failed for page %s (%s): %s", page.id, page.url, message)
                await self.db(
                    self.store.patch_job_metadata,
                    job.id,
                    {"errors": self.record_error(page.url, message), "failedItems": failed},
                )
            processed += 1
            await self.report(
                job.id,
                processed,
                total,
                {
                    "statusMessage": f"Analyzed {processed} of {total} page(s)",
                    "currentItem": page.url,
                },
            )

        await self.mark_completed(
            job.id, processed, total, f"Analysis complete: {processed - failed} of {total} page(s)"
        )


class MatchRunner(JobRunner):
    job_type = JobType.MATCH

    async def execute(self, job: Job) -> None:
        payload = MatchJobPayload.model_validate(job.payload)
        await self.db(
            self.store.patch_job_metadata,
            job.id,
            ItemProgress(status_message="Ranking pages...").to_metadata(),
        )
        results = await self.ctx.matcher.rank_candidates(payload.pillar_id, payload.config)
        total = len(results)
        await self.db(self.store.update_job, job.id, total_items=total)

        for processed, result in enumerate(results, start=1):
            control = await self.check_control(job.id)
            if control is Control.CANCELLED:
                return
            if control is Control.PAUSE:
                await self.pause(job.id)
                return
            await self.ctx.matcher.save_match(payload.pillar_id, result)
            await self.report(
                job.id,
                processed,
                total,
                {"statusMessage": f"Saved {processed} of {total} match(es)"},
            )

        await self.mark_completed(job.id, total, total, f"Matched {total} page(s)")


class GenerateRunner(JobRunner):
    job_type = JobType.GENERATE

    async def execute(self, job: Job) -> None:
        payload = GenerateJobPayload.model_validate(job.payload)
        config = payload.config
        await self.db(self.store.update_job, job.id, total_items=1)
        await self.db(
            self.store.patch_job_metadata,
            job.id,
            ItemProgress(
                status_message=f"Generating {config.content_type.value.replace('_', ' ')}...",
                current_item=payload.pillar_id,
            ).to_metadata(),
        )

        generated = await self.ctx.generator.generate_draft(payload.pillar_id, config)
        pillar = await self.db(self.store.get_pillar, payload.pillar_id)
        draft, version = await self.db(
            self.store.create_draft,
            Draft(
                project_id=pillar.project_id if pillar else job.project_id,
                pillar_id=payload.pillar_id,
                title=generated.title,
                slug=generated.slug,
                content=generated.content,
                content_type=config.content_type,
                source_page_ids=list(config.source_page_ids),
                schema_recommendations=generated.schema_recommendations,
            ),
        )
        logger.info(
            "Saved draft %s (version %d) for job %s", draft.id, version.version_number, job.id
        )
        await self.db(self.store.patch_job_metadata, job.id, {"draftId": draft.id})
        await self.mark_completed(job.id, 1, 1, f"Draft ready: {draft.title}")

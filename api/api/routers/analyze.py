"""Image analysis endpoints: compute first, then deduct credits.

A request is billed only after the compute call produced a result.  The
balance read before compute is a cheap gate that avoids spending compute on
owners who plainly cannot pay; the authoritative check is the atomic
consume afterwards.  If that consume fails the caller gets an error and the
failure is logged as ``reconciliation_required`` so the unbilled compute
can be settled by hand.
"""

from __future__ import annotations

import asyncio
import logging

from fastapi import APIRouter, BackgroundTasks, HTTPException, Request
from ledger_engine.errors import InsufficientCreditsError, LedgerError, StoreUnavailableError
from ledger_engine.ledger.engine import LedgerEngine
from ledger_engine.models.ledger import ConsumeResult

from api.dependencies import ComputeDep, LedgerDep, OwnerDep, SettingsDep, UsageRecorderDep
from api.schemas import AnalyzeRequest, AnalyzeResponse, BatchAnalyzeRequest, BatchAnalyzeResponse
from api.services.compute_client import DEFAULT_PROMPT, ComputeError, ComputeResult
from api.services.input_validation import sanitize_text, validate_image_data_url

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/analyze", tags=["analyze"])


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _compute_http_error(exc: ComputeError, *, own_key: bool) -> HTTPException:
    if exc.timed_out:
        return HTTPException(status_code=504, detail="Request timeout - please try again with a smaller image")
    if exc.status_code == 429:
        return HTTPException(status_code=429, detail="Analysis service is busy, please try again later")
    if own_key and exc.status_code in (401, 403):
        return HTTPException(status_code=400, detail="The supplied API key was rejected")
    return HTTPException(status_code=502, detail="Analysis failed")


async def _gate(ledger: LedgerEngine, owner_id: str, units: int) -> int:
    """Advisory pre-compute balance check; returns the balance it saw."""
    available = await ledger.available_balance(owner_id)
    if available < units:
        raise InsufficientCreditsError(owner_id, units, available)
    return available


async def _consume_after_compute(
    ledger: LedgerEngine,
    request: Request,
    owner_id: str,
    units: int,
    compute_request_ids: list[str | None],
) -> ConsumeResult:
    try:
        return await ledger.reserve_and_consume(owner_id, units)
    except LedgerError as exc:
        reconciliation = {
            "owner_id": owner_id,
            "units": units,
            "compute_request_ids": compute_request_ids,
            "error": exc.label,
            "correlation_id": getattr(request.state, "correlation_id", None),
        }
        logger.error(
            "reconciliation_required owner=%s units=%d compute_request_ids=%s error=%s",
            owner_id,
            units,
            compute_request_ids,
            exc.label,
            extra={"reconciliation": reconciliation},
        )
        raise


async def _remaining(ledger: LedgerEngine, owner_id: str) -> int | None:
    # The deduction has committed; a failed re-read must not fail the request.
    try:
        return await ledger.available_balance(owner_id)
    except StoreUnavailableError:
        logger.warning("Could not re-read balance for owner=%s after deduction", owner_id)
        return None


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------


@router.post("", response_model=AnalyzeResponse)
async def analyze(
    body: AnalyzeRequest,
    request: Request,
    background_tasks: BackgroundTasks,
    ledger: LedgerDep,
    compute: ComputeDep,
    recorder: UsageRecorderDep,
    settings: SettingsDep,
    owner_id: OwnerDep,
) -> AnalyzeResponse:
    """Analyze one image and charge one credit.

    With ``userApiKey`` the caller's own compute key is used and no credits
    are consumed; usage is still recorded with ``credits_used=0``.
    """
    try:
        image = validate_image_data_url(body.image_data_url)
    except ValueError as exc:
        logger.info("Rejected image from owner=%s: %s", owner_id, exc)
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    context = sanitize_text(body.context)
    system_prompt = sanitize_text(body.system_prompt)
    own_key = bool(body.user_api_key)

    if not own_key:
        await _gate(ledger, owner_id, 1)

    try:
        result = await compute.analyze(
            image,
            context=context,
            system_prompt=system_prompt,
            owner_id=owner_id,
            api_key=body.user_api_key,
            model=settings.compute_model,
            max_tokens=settings.compute_max_tokens,
            detail="low",
        )
    except ComputeError as exc:
        raise _compute_http_error(exc, own_key=own_key) from exc

    if own_key:
        background_tasks.add_task(
            recorder.append,
            owner_id,
            0,
            request_excerpt=context,
            response_excerpt=result.text,
            used_own_key=True,
        )
        return AnalyzeResponse(response=result.text, tokens_used=result.tokens_used)

    consumed = await _consume_after_compute(ledger, request, owner_id, 1, [result.request_id])
    background_tasks.add_task(
        recorder.append,
        owner_id,
        1,
        purchase_id=consumed.purchase_id,
        subscription_id=consumed.subscription_id,
        request_excerpt=context,
        response_excerpt=result.text,
    )
    return AnalyzeResponse(
        response=result.text,
        remaining_credits=await _remaining(ledger, owner_id),
        tokens_used=result.tokens_used,
    )


@router.post("/batch", response_model=BatchAnalyzeResponse)
async def analyze_batch(
    body: BatchAnalyzeRequest,
    request: Request,
    background_tasks: BackgroundTasks,
    ledger: LedgerDep,
    compute: ComputeDep,
    recorder: UsageRecorderDep,
    settings: SettingsDep,
    owner_id: OwnerDep,
) -> BatchAnalyzeResponse:
    """Analyze up to four images and charge one credit per image.

    All images are analysed concurrently; the batch is charged as a single
    consume of N credits after every analysis succeeded, so a failed batch
    costs nothing.
    """
    images: list[str] = []
    for index, image in enumerate(body.images, start=1):
        try:
            images.append(validate_image_data_url(image))
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=f"Image {index}: {exc}") from exc

    units = len(images)
    context = sanitize_text(body.context) or DEFAULT_PROMPT
    system_prompt = sanitize_text(body.system_prompt)
    own_key = bool(body.user_api_key)

    if not own_key:
        await _gate(ledger, owner_id, units)

    try:
        results: list[ComputeResult] = await asyncio.gather(
            *(
                compute.analyze(
                    image,
                    context=f"{context} (Image {index} of {units})",
                    system_prompt=system_prompt,
                    owner_id=owner_id,
                    api_key=body.user_api_key,
                    model=settings.compute_batch_model,
                    max_tokens=settings.compute_batch_max_tokens,
                    detail="high",
                )
                for index, image in enumerate(images, start=1)
            )
        )
    except ComputeError as exc:
        raise _compute_http_error(exc, own_key=own_key) from exc

    responses = [r.text for r in results]
    total_tokens = sum(r.tokens_used for r in results)

    if own_key:
        background_tasks.add_task(
            recorder.append,
            owner_id,
            0,
            request_excerpt=context,
            response_excerpt=responses[0],
            used_own_key=True,
        )
        return BatchAnalyzeResponse(responses=responses, total_tokens_used=total_tokens)

    consumed = await _consume_after_compute(ledger, request, owner_id, units, [r.request_id for r in results])
    background_tasks.add_task(
        recorder.append,
        owner_id,
        units,
        purchase_id=consumed.purchase_id,
        subscription_id=consumed.subscription_id,
        request_excerpt=context,
        response_excerpt=responses[0],
    )
    return BatchAnalyzeResponse(
        responses=responses,
        remaining_credits=await _remaining(ledger, owner_id),
        total_tokens_used=total_tokens,
    )

from typing import Annotated
import uuid

from fastapi import APIRouter, Depends, Path, Query, Request, status

from app.schemas.condition_schemas import (
    ConditionResponse,
    ConditionScheduleResponse,
    CreateConditionRequest,
    PanicResponse,
    ScheduleEntryResponse,
    UpdateConditionRequest,
)
from app.services.conditions.condition_service import (
    ConditionService,
    get_condition_service,
)
from app.utils.datetime_utils import naive_utc_now
from app.utils.responses import ResponseBuilder

conditions_router = APIRouter()

ConditionId = Annotated[uuid.UUID, Path(description="Condition ID")]


def _condition_payload(service: ConditionService, condition) -> dict:
    return ConditionResponse.from_model(
        condition, service.compute_deadline(condition, naive_utc_now())
    ).model_dump(by_alias=True)


@conditions_router.post(
    "",
    response_model=ConditionResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create a condition",
    description="Attach a disarmed delivery condition to a message",
)
async def create_condition(
    request: Request,
    condition_data: CreateConditionRequest,
    condition_service: ConditionService = Depends(get_condition_service),
):
    condition = await condition_service.create_condition(condition_data)
    return ResponseBuilder.success(
        request=request,
        data=_condition_payload(condition_service, condition),
        message="Condition created successfully",
        status_code=status.HTTP_201_CREATED,
    )


@conditions_router.get(
    "/{condition_id}",
    response_model=ConditionResponse,
    status_code=status.HTTP_200_OK,
    summary="Get a condition",
)
async def get_condition(
    request: Request,
    condition_id: ConditionId,
    condition_service: ConditionService = Depends(get_condition_service),
):
    condition = await condition_service.get_condition_or_raise(condition_id)
    return ResponseBuilder.success(
        request=request,
        data=_condition_payload(condition_service, condition),
        message="Condition retrieved successfully",
    )


@conditions_router.patch(
    "/{condition_id}",
    response_model=ConditionResponse,
    status_code=status.HTTP_200_OK,
    summary="Update a condition",
    description="Partially update a condition; an armed condition is replanned",
)
async def update_condition(
    request: Request,
    condition_id: ConditionId,
    condition_data: UpdateConditionRequest,
    condition_service: ConditionService = Depends(get_condition_service),
):
    condition = await condition_service.update_condition(condition_id, condition_data)
    return ResponseBuilder.success(
        request=request,
        data=_condition_payload(condition_service, condition),
        message="Condition updated successfully",
    )


@conditions_router.post(
    "/{condition_id}/arm",
    response_model=ConditionResponse,
    status_code=status.HTTP_200_OK,
    summary="Arm a condition",
)
async def arm_condition(
    request: Request,
    condition_id: ConditionId,
    condition_service: ConditionService = Depends(get_condition_service),
):
    outcome = await condition_service.arm(condition_id)
    return ResponseBuilder.success(
        request=request,
        data=ConditionResponse.from_model(
            outcome.condition, outcome.deadline
        ).model_dump(by_alias=True),
        message="Condition armed successfully",
    )


@conditions_router.post(
    "/{condition_id}/disarm",
    response_model=ConditionResponse,
    status_code=status.HTTP_200_OK,
    summary="Disarm a condition",
)
async def disarm_condition(
    request: Request,
    condition_id: ConditionId,
    condition_service: ConditionService = Depends(get_condition_service),
):
    condition = await condition_service.disarm(condition_id)
    return ResponseBuilder.success(
        request=request,
        data=_condition_payload(condition_service, condition),
        message="Condition disarmed successfully",
    )


@conditions_router.post(
    "/{condition_id}/check-in",
    response_model=ConditionResponse,
    status_code=status.HTTP_200_OK,
    summary="Check in",
    description="Record owner activity and push the delivery deadline out",
)
async def check_in(
    request: Request,
    condition_id: ConditionId,
    condition_service: ConditionService = Depends(get_condition_service),
):
    now = naive_utc_now()
    deadline = await condition_service.check_in(condition_id, now)
    condition = await condition_service.get_condition_or_raise(condition_id)
    return ResponseBuilder.success(
        request=request,
        data=ConditionResponse.from_model(condition, deadline).model_dump(
            by_alias=True
        ),
        message="Check-in recorded",
    )


@conditions_router.post(
    "/{condition_id}/panic",
    response_model=PanicResponse,
    status_code=status.HTTP_200_OK,
    summary="Fire a panic delivery",
)
async def fire_panic(
    request: Request,
    condition_id: ConditionId,
    condition_service: ConditionService = Depends(get_condition_service),
):
    outcome = await condition_service.fire_panic(condition_id)
    return ResponseBuilder.success(
        request=request,
        data=PanicResponse(
            condition_id=outcome.condition_id,
            delivered_at=outcome.delivered_at,
            active=outcome.active,
        ).model_dump(by_alias=True),
        message="Panic delivery sent",
    )


@conditions_router.get(
    "/{condition_id}/schedule",
    response_model=ConditionScheduleResponse,
    status_code=status.HTTP_200_OK,
    summary="List schedule entries of a condition",
)
async def get_condition_schedule(
    request: Request,
    condition_id: ConditionId,
    include_obsolete: Annotated[bool, Query(alias="includeObsolete")] = False,
    condition_service: ConditionService = Depends(get_condition_service),
):
    entries = await condition_service.get_schedule(condition_id, include_obsolete)
    condition = await condition_service.get_condition_or_raise(condition_id)
    return ResponseBuilder.success(
        request=request,
        data=ConditionScheduleResponse(
            condition_id=condition_id,
            deadline=condition_service.compute_deadline(condition, naive_utc_now()),
            entries=[ScheduleEntryResponse.from_model(entry) for entry in entries],
        ).model_dump(by_alias=True),
        message=f"Retrieved {len(entries)} schedule entr{'ies' if len(entries) != 1 else 'y'}",
    )

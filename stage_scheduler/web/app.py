"""FastAPI-based web interface for the stage scheduler."""

from __future__ import annotations

import logging
from dataclasses import asdict
from datetime import datetime
from typing import Callable, Dict, List, Optional

from fastapi import FastAPI, Form, Request
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse, RedirectResponse

from ..domain import StageExecution
from ..errors import ErrorKind, SchedulingError
from ..repository import DuplicateRecordError
from ..services import (
    ConflictReport,
    CompletionResult,
    SchedulerService,
)
from ..storage import SchedulerDatabase

logger = logging.getLogger(__name__)

STATUS_BY_KIND: Dict[ErrorKind, int] = {
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.INVALID_TRANSITION: 409,
    ErrorKind.DEPENDENCY_NOT_SATISFIED: 409,
    ErrorKind.CONCURRENCY_CONFLICT: 409,
    ErrorKind.NOT_IN_QUEUE: 409,
    ErrorKind.MACHINE_TYPE_MISMATCH: 422,
}


def configure_logging(level: int = logging.INFO) -> None:
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def create_app(
    database_path: str = "scheduler.sqlite3",
    *,
    demo_data: bool = True,
    clock: Optional[Callable[[], datetime]] = None,
) -> FastAPI:
    database = SchedulerDatabase(database_path)
    service = SchedulerService.from_database(database, clock=clock)
    if demo_data:
        ensure_demo_data(service)

    app = FastAPI(title="Stage Scheduler")
    app.state.scheduler = service
    app.state.database = database

    @app.on_event("shutdown")
    async def shutdown_event() -> None:  # pragma: no cover - framework hook
        database.close()

    @app.exception_handler(SchedulingError)
    async def scheduling_error_handler(request: Request, exc: SchedulingError):
        status_code = STATUS_BY_KIND.get(exc.kind, 400)
        payload = exc.to_dict()
        payload["retry_later"] = exc.retry_later
        logger.info("%s %s -> %d: %s", request.method, request.url.path, status_code, exc)
        return JSONResponse(payload, status_code=status_code)

    @app.exception_handler(DuplicateRecordError)
    async def duplicate_handler(request: Request, exc: DuplicateRecordError):
        return JSONResponse({"kind": "duplicate", "message": str(exc)}, status_code=409)

    @app.exception_handler(ValueError)
    async def validation_handler(request: Request, exc: ValueError):
        return JSONResponse({"kind": "invalid_input", "message": str(exc)}, status_code=422)

    # ------------------------------------------------------------------
    # Overview and master data
    # ------------------------------------------------------------------
    @app.get("/")
    async def dashboard(request: Request):
        service: SchedulerService = request.app.state.scheduler
        machines = []
        for machine in service.machines.list():
            current = service.stages.current_on_machine(machine.id)
            machines.append(
                {
                    "id": machine.id,
                    "name": machine.name,
                    "machine_type": machine.machine_type,
                    "priority": machine.priority,
                    "current_stage_id": current.id if current else None,
                    "queued": len(service.queue.wait_set(machine)),
                }
            )
        lots = sorted(service.lots.list(), key=lambda lot: lot.created_at)
        return jsonable_encoder(
            {
                "machines": machines,
                "lots": [
                    {
                        "id": lot.id,
                        "part_id": lot.part_id,
                        "quantity": lot.quantity,
                        "completed_at": lot.completed_at,
                    }
                    for lot in lots
                ],
                "overdue": [stage.id for stage in service.overdue_stages()],
            }
        )

    @app.get("/machines")
    async def list_machines(request: Request):
        service: SchedulerService = request.app.state.scheduler
        return jsonable_encoder([asdict(machine) for machine in service.machines.list()])

    @app.post("/machines")
    async def create_machine(
        request: Request,
        name: str = Form(...),
        machine_type: str = Form(...),
        priority: int = Form(0),
        inventory_number: str = Form(""),
        notes: str = Form(""),
    ):
        service: SchedulerService = request.app.state.scheduler
        service.register_machine(
            name,
            machine_type.strip().upper(),
            priority=priority,
            inventory_number=inventory_number,
            notes=notes,
        )
        return RedirectResponse("/machines", status_code=303)

    @app.get("/machines/{machine_id}/queue")
    async def machine_queue(machine_id: str, request: Request):
        service: SchedulerService = request.app.state.scheduler
        machine = service.get_machine(machine_id)
        return jsonable_encoder(
            [stage_payload(service, stage) for stage in service.queue.wait_set(machine)]
        )

    @app.post("/machines/{machine_id}/queue/{stage_id}/prioritize")
    async def prioritize_stage(machine_id: str, stage_id: str, request: Request):
        service: SchedulerService = request.app.state.scheduler
        service.reprioritize(machine_id, stage_id)
        return RedirectResponse(f"/machines/{machine_id}/queue", status_code=303)

    @app.post("/parts")
    async def create_part(
        request: Request,
        name: str = Form(...),
        number: str = Form(""),
        route_steps: str = Form(""),
    ):
        service: SchedulerService = request.app.state.scheduler
        part = service.register_part(name, number=number)
        steps = parse_route_steps(route_steps)
        if steps:
            service.define_route(
                part.id,
                [
                    service.build_route_step(
                        step_name,
                        machine_type,
                        norm_time_hours=norm,
                        setup_time_hours=setup,
                    )
                    for step_name, machine_type, norm, setup in steps
                ],
            )
        return JSONResponse(jsonable_encoder(asdict(part)), status_code=201)

    # ------------------------------------------------------------------
    # Lots and stages
    # ------------------------------------------------------------------
    @app.post("/lots")
    async def create_lot(
        request: Request,
        part_id: str = Form(...),
        quantity: int = Form(...),
        sub_lots: str = Form(""),
        priority: int = Form(0),
    ):
        service: SchedulerService = request.app.state.scheduler
        quantities = [int(value) for value in split_csv(sub_lots)]
        lot = service.create_lot_and_schedule(
            part_id, quantity, quantities or None, priority=priority
        )
        return RedirectResponse(f"/lots/{lot.id}", status_code=303)

    @app.get("/lots/{lot_id}")
    async def lot_detail(lot_id: str, request: Request):
        service: SchedulerService = request.app.state.scheduler
        statistics = service.lot_statistics(lot_id)
        stages = service.stages_for_lot(lot_id)
        return jsonable_encoder(
            {
                "statistics": asdict(statistics),
                "stages": [stage_payload(service, stage) for stage in stages],
            }
        )

    @app.get("/stages/{stage_id}")
    async def stage_detail(stage_id: str, request: Request):
        service: SchedulerService = request.app.state.scheduler
        stage = service.get_stage(stage_id)
        payload = stage_payload(service, stage)
        payload["can_start"] = service.can_start(stage_id)
        return jsonable_encoder(payload)

    @app.post("/stages/{stage_id}/schedule")
    async def schedule_stage(stage_id: str, request: Request):
        service: SchedulerService = request.app.state.scheduler
        return jsonable_encoder(asdict(service.schedule_stage(stage_id)))

    @app.post("/stages/{stage_id}/start")
    async def start_stage(
        stage_id: str,
        request: Request,
        operator_id: str = Form(""),
        device_id: str = Form(""),
    ):
        service: SchedulerService = request.app.state.scheduler
        service.start_stage(
            stage_id, operator_id=operator_id or None, device_id=device_id or None
        )
        return RedirectResponse(f"/stages/{stage_id}", status_code=303)

    @app.post("/stages/{stage_id}/pause")
    async def pause_stage(
        stage_id: str,
        request: Request,
        reason: str = Form(""),
        operator_id: str = Form(""),
    ):
        service: SchedulerService = request.app.state.scheduler
        service.pause_stage(stage_id, reason=reason or None, operator_id=operator_id or None)
        return RedirectResponse(f"/stages/{stage_id}", status_code=303)

    @app.post("/stages/{stage_id}/resume")
    async def resume_stage(stage_id: str, request: Request, operator_id: str = Form("")):
        service: SchedulerService = request.app.state.scheduler
        service.resume_stage(stage_id, operator_id=operator_id or None)
        return RedirectResponse(f"/stages/{stage_id}", status_code=303)

    @app.post("/stages/{stage_id}/complete")
    async def complete_stage(
        stage_id: str,
        request: Request,
        operator_id: str = Form(""),
        note: str = Form(""),
    ):
        service: SchedulerService = request.app.state.scheduler
        result = service.complete_stage(
            stage_id, operator_id=operator_id or None, note=note or None
        )
        return jsonable_encoder(completion_payload(service, result))

    @app.post("/stages/{stage_id}/cancel")
    async def cancel_stage(
        stage_id: str,
        request: Request,
        reason: str = Form(""),
        operator_id: str = Form(""),
    ):
        service: SchedulerService = request.app.state.scheduler
        service.cancel_stage(stage_id, reason, operator_id=operator_id or None)
        return RedirectResponse(f"/stages/{stage_id}", status_code=303)

    @app.post("/stages/{stage_id}/reassign")
    async def reassign_stage(stage_id: str, request: Request, machine_id: str = Form(...)):
        service: SchedulerService = request.app.state.scheduler
        service.reassign_stage(stage_id, machine_id)
        return RedirectResponse(f"/stages/{stage_id}", status_code=303)

    # ------------------------------------------------------------------
    # Planning
    # ------------------------------------------------------------------
    @app.get("/forecast")
    async def queue_forecast(request: Request):
        service: SchedulerService = request.app.state.scheduler
        return jsonable_encoder([asdict(item) for item in service.get_queue_forecast()])

    @app.get("/predict")
    async def predict(part_id: str, quantity: int, request: Request):
        service: SchedulerService = request.app.state.scheduler
        return jsonable_encoder(asdict(service.predict_schedule(part_id, quantity)))

    @app.post("/scheduler/cycle")
    async def run_cycle(request: Request):
        service: SchedulerService = request.app.state.scheduler
        return jsonable_encoder(asdict(service.run_cycle()))

    @app.post("/scheduler/optimize")
    async def optimize(request: Request):
        service: SchedulerService = request.app.state.scheduler
        return jsonable_encoder(asdict(service.optimize_queue()))

    @app.post("/scheduler/conflicts")
    async def resolve_conflicts(request: Request):
        service: SchedulerService = request.app.state.scheduler
        return jsonable_encoder(conflict_payload(service.resolve_conflicts()))

    @app.get("/options")
    async def show_options(request: Request):
        service: SchedulerService = request.app.state.scheduler
        return jsonable_encoder(asdict(service.options))

    @app.post("/options")
    async def update_options(
        request: Request,
        min_remaining_minutes: float = Form(...),
        max_priority: int = Form(...),
        setup_priority_boost: int = Form(...),
        reassign_margin: float = Form(...),
        overdue_grace_hours: float = Form(...),
        auto_schedule_lots: Optional[str] = Form(None),
        auto_start_ready_stages: Optional[str] = Form(None),
    ):
        service: SchedulerService = request.app.state.scheduler
        service.update_options(
            min_remaining_minutes=min_remaining_minutes,
            max_priority=max_priority,
            setup_priority_boost=setup_priority_boost,
            reassign_margin=reassign_margin,
            overdue_grace_hours=overdue_grace_hours,
            auto_schedule_lots=auto_schedule_lots is not None,
            auto_start_ready_stages=auto_start_ready_stages is not None,
        )
        return RedirectResponse("/options", status_code=303)

    return app


def stage_payload(service: SchedulerService, stage: StageExecution) -> Dict[str, object]:
    payload: Dict[str, object] = asdict(stage)
    step = service.step_for(stage)
    payload["step_name"] = step.name
    payload["step_order"] = step.order
    payload["planned_hours"] = service.planned_hours(stage)
    if stage.is_setup:
        payload["main_stage_id"] = service.setup_links.main_for(stage.id)
    else:
        payload["setup_stage_id"] = service.setup_links.setup_for(stage.id)
    return payload


def completion_payload(service: SchedulerService, result: CompletionResult) -> Dict[str, object]:
    payload = asdict(result)
    payload["stage"] = stage_payload(service, result.stage)
    return payload


def conflict_payload(report: ConflictReport) -> Dict[str, object]:
    return {
        "conflicts": [conflict.to_dict() for conflict in report.conflicts],
        "kept": report.kept,
        "rescheduled": [asdict(result) for result in report.rescheduled],
        "failures": report.failures,
    }


def split_csv(value: str) -> List[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


def parse_route_steps(value: str) -> List[tuple]:
    """Parse ``name:TYPE:norm_hours[:setup_hours]`` entries separated by ``;``."""

    steps = []
    for entry in value.split(";"):
        entry = entry.strip()
        if not entry:
            continue
        parts = [part.strip() for part in entry.split(":")]
        if len(parts) not in (3, 4):
            raise ValueError(f"Invalid route step {entry!r}")
        setup = float(parts[3]) if len(parts) == 4 else 0.0
        steps.append((parts[0], parts[1].upper(), float(parts[2]), setup))
    return steps


def ensure_demo_data(service: SchedulerService) -> None:
    if len(service.machines) > 0:
        return

    service.register_machine(
        "DMG MORI CTX beta 800", "TURNING", priority=2, inventory_number="M-100"
    )
    service.register_machine("Index C100", "TURNING", priority=1, inventory_number="M-101")
    service.register_machine("Hermle C 42 U", "MILLING", priority=2, inventory_number="M-200")
    service.register_machine("Jung J630", "GRINDING", priority=1, inventory_number="M-300")

    shaft = service.register_part("Antriebswelle", number="AW-4711")
    flange = service.register_part("Lagerflansch", number="LF-0815")
    service.define_route(
        shaft.id,
        [
            service.build_route_step("Drehen", "TURNING", norm_time_hours=0.4, setup_time_hours=1.0),
            service.build_route_step("Fräsen", "MILLING", norm_time_hours=0.25, setup_time_hours=0.5),
            service.build_route_step("Schleifen", "GRINDING", norm_time_hours=0.2),
        ],
    )
    service.define_route(
        flange.id,
        [
            service.build_route_step("Drehen", "TURNING", norm_time_hours=0.3, setup_time_hours=0.75),
            service.build_route_step("Fräsen", "MILLING", norm_time_hours=0.5, setup_time_hours=0.5),
        ],
    )
    service.create_lot_and_schedule(shaft.id, 10, [6, 4])
    service.create_lot_and_schedule(flange.id, 5)
    logger.info("Demo data created")


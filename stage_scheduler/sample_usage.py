"""Demonstration script for the stage scheduler."""

from __future__ import annotations

import logging
from pprint import pprint

from . import InMemoryEventLog, SchedulerService, StageStatus


def main() -> None:
    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")
    events = InMemoryEventLog()
    scheduler = SchedulerService(event_sink=events)

    # Stammdaten
    lathe = scheduler.register_machine("DMG MORI CTX beta 800", "TURNING", priority=2)
    scheduler.register_machine("Hermle C 42 U", "MILLING", priority=1)

    shaft = scheduler.register_part("Antriebswelle", number="AW-4711")
    flange = scheduler.register_part("Lagerflansch", number="LF-0815")
    for part in (shaft, flange):
        scheduler.define_route(
            part.id,
            [
                scheduler.build_route_step(
                    "Drehen", "TURNING", norm_time_hours=0.5, setup_time_hours=1.0
                ),
                scheduler.build_route_step("Fräsen", "MILLING", norm_time_hours=0.25),
            ],
        )

    print("Prognose für 8x Antriebswelle:")
    pprint(scheduler.predict_schedule(shaft.id, 8))

    shaft_lot = scheduler.create_lot_and_schedule(shaft.id, 8, [5, 3])
    first, second = (
        scheduler.sequencer.first_stage(sub_lot_id) for sub_lot_id in shaft_lot.sub_lot_ids
    )
    scheduler.start_stage(first.id, operator_id="mueller")
    scheduler.complete_stage(first.id, operator_id="mueller")
    scheduler.start_stage(second.id, operator_id="mueller")
    scheduler.complete_stage(second.id, operator_id="mueller")

    # switching the lathe to another part needs a changeover
    flange_lot = scheduler.create_lot_and_schedule(flange.id, 4)
    flange_stage = scheduler.sequencer.first_stage(flange_lot.sub_lot_ids[0])
    setup_id = scheduler.setup_links.setup_for(flange_stage.id)
    print(f"Rüststufe für Lagerflansch auf {lathe.name}: {setup_id}")
    scheduler.start_stage(setup_id)
    scheduler.complete_stage(setup_id)
    assert scheduler.get_stage(flange_stage.id).status == StageStatus.PENDING

    print("Warteschlangenprognose:")
    pprint(scheduler.get_queue_forecast())
    print("Losstatistik:")
    pprint(scheduler.lot_statistics(shaft_lot.id))
    print(f"{len(events.events)} Ereignisse protokolliert")


if __name__ == "__main__":
    main()

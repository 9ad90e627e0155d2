"""Small-town demo: four residents, a cafe, a park and a scheduled party.

Runs offline by default (no model or database needed):

    python -m examples.smallville.town --ticks 30

With ``--llm`` the hosted Cognition Service is used instead; it needs
LLM_PROVIDER/LLM_MODEL and OPENAI_API_KEY in the environment (or .env).
"""

from __future__ import annotations

import argparse
import asyncio
import random
from datetime import datetime, timedelta, timezone

from genworld import (
    Agent,
    Area,
    ChangeNotification,
    Config,
    EventKind,
    EventPriority,
    InMemoryStore,
    LLMCognitionService,
    Location,
    OfflineCognitionService,
    SimulationConfig,
    SimulationLoop,
    WorldState,
    WorldStateManager,
    configure_logging,
)

START = datetime(2024, 2, 13, 7, 30, tzinfo=timezone.utc)

AREAS = [
    Area(name="Hobbs Cafe", description="A cosy cafe on the main street", x=0, y=0, connections=["Johnson Park"]),
    Area(name="Johnson Park", description="A green park with a fountain", x=40, y=0, connections=["Hobbs Cafe"]),
    Area(name="Library", description="A quiet two-storey library", x=80, y=20, connections=["Johnson Park"]),
]

RESIDENTS = [
    ("isabella", "Isabella Rodriguez", "Hobbs Cafe", ["throw a Valentine's party at the cafe"], ["warm", "organised"]),
    ("klaus", "Klaus Mueller", "Library", ["finish the research paper"], ["curious", "shy"]),
    ("maria", "Maria Lopez", "Hobbs Cafe", ["study for the physics exam"], ["cheerful"]),
    ("tom", "Tom Moreno", "Johnson Park", ["keep the shop running"], ["grumpy", "loyal"]),
]


def build_world() -> WorldStateManager:
    state = WorldState(world_id="smallville", current_time=START, locations={a.name: a for a in AREAS})
    world = WorldStateManager(state)
    for agent_id, name, area, goals, traits in RESIDENTS:
        spot = state.locations[area]
        world.put_agent(
            Agent(
                id=agent_id,
                world_id="smallville",
                name=name,
                location=Location(x=spot.x, y=spot.y, area=area),
                goals=goals,
                traits=traits,
            )
        )
    world.set_relationship("isabella", "maria", "friend")
    world.set_relationship("maria", "isabella", "friend")
    return world


def print_change(notification: ChangeNotification) -> None:
    print(f"\n⏱  {notification.current_time:%H:%M} (v{notification.version})")
    for agent in notification.agents:
        print(f"   • {agent.name:<20} {agent.location.area:<13} {agent.current_action or '-'}")


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="genworld small-town demo")
    parser.add_argument("--ticks", type=int, default=30, help="Number of ticks to simulate")
    parser.add_argument("--minutes-per-tick", type=int, default=10, help="Simulated minutes per tick")
    parser.add_argument("--seed", type=int, default=7, help="Seed for dialogue initiation")
    parser.add_argument("--llm", action="store_true", help="Use the hosted Cognition Service")
    return parser.parse_args()


async def main(args: argparse.Namespace) -> None:
    configure_logging()
    if args.llm:
        Config.validate()
        cognition = LLMCognitionService()
        print(f"🤖 LLM: {Config.LLM_PROVIDER}/{Config.LLM_MODEL}")
    else:
        cognition = OfflineCognitionService()
        print("🤖 Offline cognition")

    loop = SimulationLoop(
        build_world(),
        cognition=cognition,
        store=InMemoryStore(),
        config=SimulationConfig(batch_size=2, max_concurrent_agents=2),
        rng=random.Random(args.seed),
        listeners=[print_change],
    )
    loop.events.schedule(
        EventKind.WORLD_EVENT,
        {"description": "Isabella hangs a sign: Valentine's party at Hobbs Cafe tomorrow, 5pm", "area": "Hobbs Cafe"},
        due_at=START + timedelta(minutes=30),
        priority=EventPriority.HIGH,
    )
    loop.events.schedule_recurring(
        EventKind.SCHEDULED,
        {"description": "The church bell rings the hour"},
        start=START.replace(minute=0),
        interval="1h",
    )
    loop.events.schedule(
        EventKind.WORLD_EVENT,
        {"weather": {"condition": "rain", "temperature": 9}, "description": "It starts to rain"},
        due_at="11:00",
    )

    results = await loop.run(args.ticks, tick=timedelta(minutes=args.minutes_per_tick))

    degraded = [r for r in results if not r.healthy]
    print("\n✅ Simulation complete!")
    print(f"   Ticks: {len(results)} ({len(degraded)} degraded)")
    print(f"   Dialogues: {loop.dialogues.statistics()['total_dialogues']}")
    for agent_id, *_ in RESIDENTS:
        stats = await loop.memory.statistics(agent_id)
        reflections = await loop.reflection.statistics(agent_id)
        print(f"   {agent_id}: {stats['total']} memories, {reflections['total_reflections']} reflections")


if __name__ == "__main__":
    asyncio.run(main(parse_args()))

#!/usr/bin/env python3
"""
Agentboard — Demo Board Seeder
Populates a database with agents, projects, tickets, comments and history by
driving the real BoardService, so revisions and the activity feed look like
they would after a day of agents working the board.

Usage:
    python scripts/generate-sample-data.py
    python scripts/generate-sample-data.py --projects 3 --tickets 25 --database-url sqlite+aiosqlite:///./demo.db
    python scripts/generate-sample-data.py --keys-output demo-keys.json

Requires the package to be installed (pip install -e .).
"""

import json
import random
import asyncio
import argparse
import logging

from board_service import BoardService
from database import create_engine_for, create_session_factory, init_db
from events import EventBus
from models import COLUMN_ORDER


# ── Configuration ───────────────────────────────────────────

AGENT_NAMES = ["planner", "coder", "reviewer", "tester", "docs-writer", "release-bot"]

PROJECTS = [
    ("Payments API", "Card processing and refunds service"),
    ("Mobile App", "iOS and Android client"),
    ("Data Platform", "Ingestion, warehouse and reporting"),
    ("Developer Portal", "Docs, API keys and onboarding"),
]

TICKET_VERBS = ["Fix", "Add", "Refactor", "Document", "Investigate", "Remove", "Migrate", "Speed up"]
TICKET_SUBJECTS = [
    "login timeout", "refund webhook", "retry policy", "pagination on list endpoints",
    "flaky integration test", "dark mode", "CSV export", "rate limiter", "schema migration",
    "error messages", "search ranking", "health check", "audit log retention",
]
COMMENTS = [
    "Picking this up.",
    "Root cause found, patch incoming.",
    "Needs a second pair of eyes before merge.",
    "Tests added for the edge cases.",
    "Blocked on upstream change, parking for now.",
    "Verified on staging.",
]


class DemoBoardSeeder:
    """Drives BoardService to build a realistic-looking board."""

    def __init__(self, service: BoardService, seed: int = 42):
        self.service = service
        random.seed(seed)

    async def seed_agents(self, count: int) -> list:
        agents = []
        for name in AGENT_NAMES[:count]:
            agents.append(await self.service.get_or_create_agent(name))
        return agents

    async def seed_project(self, name: str, description: str, agents: list, tickets: int) -> dict:
        project = await self.service.create_project(name, description)
        created = []
        for _ in range(tickets):
            author = random.choice(agents)
            title = f"{random.choice(TICKET_VERBS)} {random.choice(TICKET_SUBJECTS)}"
            ticket = await self.service.create_ticket(
                project.id, title, f"Seeded by {author.name}", agent_id=author.id,
            )
            created.append(ticket)

        for ticket in created:
            worker = random.choice(agents)
            # Walk the ticket forward a random number of columns
            steps = random.randint(0, len(COLUMN_ORDER) - 1)
            for column in COLUMN_ORDER[1:steps + 1]:
                await self.service.move_ticket(project.id, ticket.id, column, actor_id=worker.id)
            if random.random() < 0.6:
                await self.service.assign_ticket(project.id, ticket.id, worker.id, actor_id=worker.id)
            if random.random() < 0.5:
                await self.service.create_comment(project.id, ticket.id, worker.id, random.choice(COMMENTS))
        return {"id": project.id, "name": project.name, "tickets": len(created)}


async def run(args) -> dict:
    engine = create_engine_for(args.database_url)
    await init_db(engine)
    session_factory = create_session_factory(engine)
    bus = EventBus()
    try:
        async with session_factory() as db:
            service = BoardService(db, bus, asyncio.Lock())
            seeder = DemoBoardSeeder(service, seed=args.seed)
            agents = await seeder.seed_agents(args.agents)
            projects = []
            for name, description in PROJECTS[:args.projects]:
                projects.append(await seeder.seed_project(name, description, agents, args.tickets))
            return {
                "admin_key": await service.get_or_create_admin_key(),
                "agents": [{"name": a.name, "api_key": a.api_key} for a in agents],
                "projects": projects,
            }
    finally:
        bus.close()
        await engine.dispose()


def main():
    parser = argparse.ArgumentParser(description="Agentboard demo board seeder")
    parser.add_argument("--database-url", type=str, default="sqlite+aiosqlite:///./agentboard.db",
                        help="SQLAlchemy async database URL")
    parser.add_argument("--agents", type=int, default=4, help=f"Number of agents (max {len(AGENT_NAMES)})")
    parser.add_argument("--projects", type=int, default=2, help=f"Number of projects (max {len(PROJECTS)})")
    parser.add_argument("--tickets", type=int, default=12, help="Tickets per project")
    parser.add_argument("--seed", type=int, default=42, help="Random seed")
    parser.add_argument("--keys-output", type=str, default=None, help="Write admin/agent keys to this JSON file")
    args = parser.parse_args()

    logging.basicConfig(level=logging.WARNING)
    summary = asyncio.run(run(args))

    print("✅ Seeded demo board")
    for project in summary["projects"]:
        print(f"   {project['name']}: {project['tickets']} tickets")
    for agent in summary["agents"]:
        print(f"   agent {agent['name']}: {agent['api_key']}")

    if args.keys_output:
        with open(args.keys_output, "w", encoding="utf-8") as f:
            json.dump(summary, f, indent=2)
        print(f"   keys written to {args.keys_output}")


if __name__ == "__main__":
    main()

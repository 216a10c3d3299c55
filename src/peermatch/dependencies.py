from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Annotated

from fastapi import Depends
from fastapi.requests import HTTPConnection

from peermatch.redis_client import CoordinationStore
from peermatch.services.match_expiry import ExpirySweeper
from peermatch.services.match_queue import MatchQueue
from peermatch.services.match_scheduler import Matchmaker
from peermatch.services.pending_match import PendingMatchCoordinator
from peermatch.services.rating_updater import RatingUpdater
from peermatch.services.room_tokens import RoomTokenIssuer
from peermatch.services.rooms import RoomService
from peermatch.ws.notifier import ConnectionRegistry, EventPublisher


@dataclass
class MatchServices:
    """Everything one instance needs, wired around a single store."""

    store: CoordinationStore
    publisher: EventPublisher
    registry: ConnectionRegistry
    queue: MatchQueue
    matchmaker: Matchmaker
    sweeper: ExpirySweeper
    coordinator: PendingMatchCoordinator
    ratings: RatingUpdater
    rooms: RoomService


def build_services(
    store: CoordinationStore,
    clock: Callable[[], float] = time.time,
    tokens: RoomTokenIssuer | None = None,
) -> MatchServices:
    tokens = tokens or RoomTokenIssuer()
    publisher = EventPublisher(store)
    queue = MatchQueue(store, publisher, clock=clock)
    sweeper = ExpirySweeper(store, publisher, clock=clock)
    return MatchServices(
        store=store,
        publisher=publisher,
        registry=ConnectionRegistry(),
        queue=queue,
        matchmaker=Matchmaker(store, queue, publisher, tokens, clock=clock),
        sweeper=sweeper,
        coordinator=PendingMatchCoordinator(store, queue, publisher, tokens, sweeper, clock=clock),
        ratings=RatingUpdater(store, publisher, clock=clock),
        rooms=RoomService(store, publisher),
    )


def get_services(connection: HTTPConnection) -> MatchServices:
    return connection.app.state.services


ServicesDep = Annotated[MatchServices, Depends(get_services)]

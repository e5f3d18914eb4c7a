from wow_harvester.producers.auctions import AuctionsSweep
from wow_harvester.producers.base import SweepProducer
from wow_harvester.producers.guilds import GuildSweep
from wow_harvester.producers.ladder import LadderSweep

SWEEPS: dict[str, type[SweepProducer]] = {
    "ladder": LadderSweep,
    "guilds": GuildSweep,
    "auctions": AuctionsSweep,
}

__all__ = ["SWEEPS", "AuctionsSweep", "GuildSweep", "LadderSweep", "SweepProducer"]

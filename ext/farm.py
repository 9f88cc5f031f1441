"""LOOP Extension: farm world.

A square farm grid the program drives with game actions:

- Actions (``move``, ``harvest``, ``plant``, ``till``, ``use_item``,
  ``do_a_flip``) take effect immediately and then suspend the program for
  their animation time by returning ``WaitSeconds``.
- Queries (``can_harvest``, ``get_ground_type``, ``get_pos_x``, ...) return
  at once.
- ``Grounds``, ``Items`` and ``Entities`` are enum namespaces of strings;
  ``North``/``South``/``East``/``West`` are direction constants.

The grid lives in numpy arrays indexed ``[y, x]``. Moving off an edge wraps
around to the opposite side.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

import numpy as np

from extensions import ExtensionAPI
from interpreter import LoopRuntimeError, WaitSeconds, to_int


LOOP_EXTENSION_NAME = "farm"
LOOP_EXTENSION_API_VERSION = 1


WORLD_SIZE = 10

GROUNDS = {"Soil": "soil", "Turf": "turf", "Grassland": "grassland"}
ITEMS = {
    "Hay": "hay",
    "Wood": "wood",
    "Carrot": "carrot",
    "Pumpkin": "pumpkin",
    "Power": "power",
    "Sunflower": "sunflower",
    "Water": "water",
}
ENTITIES = {
    "Grass": "grass",
    "Bush": "bush",
    "Tree": "tree",
    "Carrot": "carrot",
    "Pumpkin": "pumpkin",
    "Sunflower": "sunflower",
}
DIRECTIONS = {"North": "up", "South": "down", "East": "right", "West": "left"}

ACTION_SECONDS = {
    "move": 0.3,
    "harvest": 0.2,
    "plant": 0.3,
    "till": 0.1,
    "use_item": 0.1,
    "do_a_flip": 1.0,
}

# Direction name -> (dx, dy); compass words are accepted alongside the constants.
_STEPS = {
    "up": (0, 1),
    "north": (0, 1),
    "down": (0, -1),
    "south": (0, -1),
    "right": (1, 0),
    "east": (1, 0),
    "left": (-1, 0),
    "west": (-1, 0),
}

# Array codes. Entity code 0 means an empty tile.
_GROUND_CODES: List[str] = ["grassland", "soil", "turf"]
_ENTITY_CODES: List[Optional[str]] = [None, "grass", "bush", "tree", "carrot", "pumpkin", "sunflower"]

# Seconds of world time an entity needs before it can be harvested (dry soil).
_GROW_SECONDS = {
    "grass": 0.5,
    "bush": 1.0,
    "tree": 2.0,
    "carrot": 1.0,
    "pumpkin": 2.0,
    "sunflower": 1.5,
}
_YIELDS = {
    "grass": ("hay", 1.0),
    "bush": ("wood", 1.0),
    "tree": ("wood", 5.0),
    "carrot": ("carrot", 1.0),
    "pumpkin": ("pumpkin", 1.0),
    "sunflower": ("power", 1.0),
}
_NEEDS_SOIL = {"carrot", "pumpkin", "sunflower"}

WATER_PER_USE = 0.25


class FarmWorld:
    def __init__(self, size: int = WORLD_SIZE, inventory: Optional[Dict[str, float]] = None) -> None:
        if size < 1:
            raise ValueError("world size must be >= 1")
        self.size = size
        self.ground = np.zeros((size, size), dtype=np.int8)
        self.entity = np.zeros((size, size), dtype=np.int8)
        self.planted_at = np.zeros((size, size), dtype=np.float64)
        self.water = np.zeros((size, size), dtype=np.float64)
        self.x = 0
        self.y = 0
        self.clock = 0.0
        self.inventory: Dict[str, float] = dict(inventory or {})
        self.flips = 0

    # ---- queries ----

    @property
    def ground_type(self) -> str:
        return _GROUND_CODES[int(self.ground[self.y, self.x])]

    @property
    def entity_type(self) -> Optional[str]:
        return _ENTITY_CODES[int(self.entity[self.y, self.x])]

    def can_harvest(self) -> bool:
        entity = self.entity_type
        if entity is None:
            return False
        # Water shortens growth by up to half.
        needed = _GROW_SECONDS[entity] * (1.0 - 0.5 * float(self.water[self.y, self.x]))
        return self.clock - float(self.planted_at[self.y, self.x]) >= needed

    def num_items(self, item: str) -> float:
        return float(self.inventory.get(item, 0.0))

    # ---- actions ----

    def move(self, direction: str) -> None:
        step = _STEPS.get(direction.lower())
        if step is None:
            raise ValueError(f"Invalid direction: {direction}")
        dx, dy = step
        self.x = (self.x + dx) % self.size
        self.y = (self.y + dy) % self.size
        self.clock += ACTION_SECONDS["move"]

    def harvest(self) -> bool:
        entity = self.entity_type
        harvested = False
        if entity is not None:
            # Harvesting too early destroys the entity without a yield.
            if self.can_harvest():
                item, amount = _YIELDS[entity]
                self.inventory[item] = self.inventory.get(item, 0.0) + amount
                harvested = True
            self.entity[self.y, self.x] = 0
        self.clock += ACTION_SECONDS["harvest"]
        return harvested

    def plant(self, entity: str) -> None:
        if entity not in _ENTITY_CODES[1:]:
            raise ValueError(f"Unknown entity: {entity}")
        if entity in _NEEDS_SOIL and self.ground_type != "soil":
            raise ValueError(f"Cannot plant {entity} on {self.ground_type}")
        self.entity[self.y, self.x] = _ENTITY_CODES.index(entity)
        self.planted_at[self.y, self.x] = self.clock
        self.clock += ACTION_SECONDS["plant"]

    def till(self) -> None:
        current = self.ground_type
        target = "grassland" if current == "soil" else "soil"
        self.ground[self.y, self.x] = _GROUND_CODES.index(target)
        self.clock += ACTION_SECONDS["till"]

    def use_item(self, item: str) -> bool:
        used = False
        if self.inventory.get(item, 0.0) >= 1.0:
            self.inventory[item] -= 1.0
            if item == "water":
                self.water[self.y, self.x] = min(1.0, float(self.water[self.y, self.x]) + WATER_PER_USE)
            used = True
        self.clock += ACTION_SECONDS["use_item"]
        return used

    def do_a_flip(self) -> None:
        self.flips += 1
        self.clock += ACTION_SECONDS["do_a_flip"]

    def entity_counts(self) -> Dict[str, int]:
        codes, counts = np.unique(self.entity, return_counts=True)
        return {_ENTITY_CODES[int(code)]: int(count) for code, count in zip(codes, counts) if code != 0}


def _expect_str(value: Any, rule: str, location: Any) -> str:
    if not isinstance(value, str):
        raise LoopRuntimeError(f"{rule}() expects a string argument", location=location, rule=rule)
    return value


def _action(name: str, location: Any, fn, *args: Any) -> WaitSeconds:
    try:
        fn(*args)
    except ValueError as exc:
        raise LoopRuntimeError(str(exc), location=location, rule=name) from None
    return WaitSeconds(ACTION_SECONDS[name])


def register_farm(ext: ExtensionAPI, world: Optional[FarmWorld] = None) -> FarmWorld:
    world = world or FarmWorld()

    ext.register_enum("Grounds", GROUNDS)
    ext.register_enum("Items", ITEMS)
    ext.register_enum("Entities", ENTITIES)
    for name, value in DIRECTIONS.items():
        ext.register_constant(name, value)

    @ext.builtin("move", 1, 1, suspends=True, doc="move(direction): step one tile, wrapping at the edges")
    def _move(interpreter, args, _kwargs, location):
        return _action("move", location, world.move, _expect_str(args[0], "move", location))

    @ext.builtin("harvest", 0, 0, suspends=True, doc="harvest(): collect the entity on this tile")
    def _harvest(interpreter, args, _kwargs, location):
        return _action("harvest", location, world.harvest)

    @ext.builtin("plant", 1, 1, suspends=True, doc="plant(entity): plant an Entities member on this tile")
    def _plant(interpreter, args, _kwargs, location):
        return _action("plant", location, world.plant, _expect_str(args[0], "plant", location))

    @ext.builtin("till", 0, 0, suspends=True, doc="till(): toggle this tile between soil and grassland")
    def _till(interpreter, args, _kwargs, location):
        return _action("till", location, world.till)

    @ext.builtin("use_item", 1, 1, suspends=True, doc="use_item(item): consume one unit of an Items member")
    def _use_item(interpreter, args, _kwargs, location):
        return _action("use_item", location, world.use_item, _expect_str(args[0], "use_item", location))

    @ext.builtin("do_a_flip", 0, 0, suspends=True, doc="do_a_flip(): celebrate")
    def _do_a_flip(interpreter, args, _kwargs, location):
        return _action("do_a_flip", location, world.do_a_flip)

    @ext.builtin("can_harvest", 0, 0)
    def _can_harvest(interpreter, args, _kwargs, location):
        return world.can_harvest()

    @ext.builtin("get_ground_type", 0, 0)
    def _get_ground_type(interpreter, args, _kwargs, location):
        return world.ground_type

    @ext.builtin("get_entity_type", 0, 0)
    def _get_entity_type(interpreter, args, _kwargs, location):
        return world.entity_type

    @ext.builtin("get_pos_x", 0, 0)
    def _get_pos_x(interpreter, args, _kwargs, location):
        return float(world.x)

    @ext.builtin("get_pos_y", 0, 0)
    def _get_pos_y(interpreter, args, _kwargs, location):
        return float(world.y)

    @ext.builtin("get_world_size", 0, 0)
    def _get_world_size(interpreter, args, _kwargs, location):
        return float(world.size)

    @ext.builtin("get_water", 0, 0)
    def _get_water(interpreter, args, _kwargs, location):
        return float(world.water[world.y, world.x])

    @ext.builtin("num_items", 1, 1)
    def _num_items(interpreter, args, _kwargs, location):
        return world.num_items(_expect_str(args[0], "num_items", location))

    @ext.builtin("is_even", 2, 2, doc="is_even(x, y): True when x + y is even")
    def _is_even(interpreter, args, _kwargs, location):
        return (to_int(args[0], location, "is_even") + to_int(args[1], location, "is_even")) % 2 == 0

    @ext.builtin("is_odd", 2, 2, doc="is_odd(x, y): True when x + y is odd")
    def _is_odd(interpreter, args, _kwargs, location):
        return (to_int(args[0], location, "is_odd") + to_int(args[1], location, "is_odd")) % 2 == 1

    return world


def loop_register(ext: ExtensionAPI) -> None:
    ext.metadata(name="farm", version="0.1.0")
    register_farm(ext)

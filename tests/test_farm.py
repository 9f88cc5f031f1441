from pathlib import Path

import numpy as np
import pytest

from extensions import load_runtime_services
from ext.farm import ACTION_SECONDS, FarmWorld, register_farm
from interpreter import ExecutionState, WaitSeconds

from conftest import run_source


FARM_PATH = Path(__file__).resolve().parent.parent / "ext" / "farm.py"


@pytest.fixture
def world():
    return FarmWorld(size=3)


@pytest.fixture
def farm(services, ext, world):
    register_farm(ext, world)
    return services


class TestFarmWorld:
    def test_starts_empty(self, world):
        assert world.ground.shape == (3, 3)
        assert world.ground_type == "grassland"
        assert world.entity_type is None
        assert not world.can_harvest()

    def test_move_wraps_around(self, world):
        world.move("left")
        assert (world.x, world.y) == (2, 0)
        world.move("North")
        world.move("up")
        world.move("up")
        assert world.y == 0
        assert world.clock == pytest.approx(4 * ACTION_SECONDS["move"])

    def test_move_rejects_unknown_direction(self, world):
        with pytest.raises(ValueError):
            world.move("sideways")

    def test_till_toggles_ground(self, world):
        world.till()
        assert world.ground_type == "soil"
        world.till()
        assert world.ground_type == "grassland"

    def test_crops_need_soil(self, world):
        with pytest.raises(ValueError):
            world.plant("carrot")
        world.till()
        world.plant("carrot")
        assert world.entity_type == "carrot"

    def test_grass_grows_anywhere(self, world):
        world.plant("grass")
        assert world.entity_type == "grass"

    def test_early_harvest_destroys_entity(self, world):
        world.plant("grass")
        assert not world.can_harvest()
        assert world.harvest() is False
        assert world.entity_type is None
        assert world.num_items("hay") == 0

    def test_harvest_after_growing(self, world):
        world.plant("tree")
        world.do_a_flip()
        world.do_a_flip()
        assert world.can_harvest()
        assert world.harvest() is True
        assert world.num_items("wood") == 5
        assert world.flips == 2

    def test_water_speeds_up_growth(self):
        dry = FarmWorld(size=1)
        wet = FarmWorld(size=1, inventory={"water": 4})
        for _ in range(4):
            assert wet.use_item("water")
        assert wet.water[0, 0] == 1.0
        dry.plant("tree")
        wet.plant("tree")
        dry.do_a_flip()
        wet.do_a_flip()
        assert wet.can_harvest()
        assert not dry.can_harvest()

    def test_use_item_without_stock(self, world):
        assert world.use_item("water") is False
        assert world.water.sum() == 0

    def test_plant_unknown_entity(self, world):
        with pytest.raises(ValueError):
            world.plant("cactus")

    def test_entity_counts(self, world):
        world.plant("grass")
        world.move("right")
        world.plant("bush")
        world.move("right")
        world.plant("grass")
        assert world.entity_counts() == {"grass": 2, "bush": 1}
        assert np.count_nonzero(world.entity) == 3

    def test_size_must_be_positive(self):
        with pytest.raises(ValueError):
            FarmWorld(size=0)


class TestFarmBuiltins:
    def test_actions_suspend_for_their_duration(self, farm):
        source = "till()\nplant(Entities.Carrot)\nmove(North)\nprint(get_pos_x(), get_pos_y(), get_ground_type())"
        result = run_source(source, farm)
        assert result.state is ExecutionState.COMPLETED
        assert result.waits == [WaitSeconds(0.1), WaitSeconds(0.3), WaitSeconds(0.3)]
        assert result.output == ["0 1 grassland"]

    def test_queries_do_not_suspend(self, farm, world):
        world.inventory["hay"] = 3.0
        source = "r = [get_world_size(), get_entity_type(), can_harvest(), num_items(Items.Hay), get_water()]"
        result = run_source(source, farm)
        assert result.waits == []
        assert result.globals["r"] == [3, None, False, 3, 0]

    def test_farming_loop(self, farm, world):
        source = (
            "for i in range(get_world_size()):\n"
            "    plant(Entities.Grass)\n"
            "    move(East)\n"
            "while not can_harvest():\n"
            "    do_a_flip()\n"
            "for i in range(get_world_size()):\n"
            "    harvest()\n"
            "    move(East)\n"
            "print(num_items(Items.Hay))\n"
        )
        result = run_source(source, farm)
        assert result.state is ExecutionState.COMPLETED
        assert result.output == ["3"]
        assert world.entity_counts() == {}

    def test_world_errors_are_runtime_errors(self, farm):
        result = run_source("x = 1\nplant(Entities.Carrot)", farm)
        assert result.state is ExecutionState.FAILED
        assert str(result.error) == "RuntimeError (Line 2): Cannot plant carrot on grassland"

    def test_arguments_must_be_strings(self, farm):
        result = run_source("move(5)", farm)
        assert result.error.message == "move() expects a string argument"

    def test_parity_helpers(self, farm):
        result = run_source("r = [is_even(1, 3), is_even(1, 2), is_odd(2, 3), is_odd(2, 2)]", farm)
        assert result.globals["r"] == [True, False, True, False]

    def test_enums_and_directions(self, farm):
        result = run_source("r = [Grounds.Soil, Items.Power, Entities.Sunflower, North, West]", farm)
        assert result.globals["r"] == ["soil", "power", "sunflower", "up", "left"]


class TestFarmExtensionModule:
    def test_loads_from_path(self):
        services = load_runtime_services([str(FARM_PATH)])
        assert [meta.name for meta in services.metadata] == ["farm"]
        assert "harvest" in services.builtins
        assert services.builtins.get("harvest").suspends
        assert not services.builtins.get("can_harvest").suspends
        result = run_source("till()\nprint(get_ground_type())", services)
        assert result.output == ["soil"]

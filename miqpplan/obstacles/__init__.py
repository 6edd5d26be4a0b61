from miqpplan.obstacles.obstacle import Obstacle
from miqpplan.obstacles.preprocessing import inflate_polygon, merge_close_polygons, \
    static_obstacle_polygons, sample_dynamic_obstacle, register_obstacles
from miqpplan.obstacles.collision import RoadBoundaries, ego_footprint, in_collision, \
    environment_collision

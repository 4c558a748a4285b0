"""Client, robots, wire messages and server for the ClickPlanet tile-claiming game."""

__version__ = "0.1.0"
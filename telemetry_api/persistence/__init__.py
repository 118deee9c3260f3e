from .sensor_value_writer import ResolvedReading, SensorValueWriter

__all__ = ["ResolvedReading", "SensorValueWriter"]

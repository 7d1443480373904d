import click

from policy_deployment.constants import Weekday
from policy_deployment.utils import normalize_object_id


class WeekdayType(click.ParamType):
    """A weekday given either by name (saturday) or by number (0 = Monday)."""

    name = "weekday"

    def convert(self, value, param, ctx):
        if isinstance(value, Weekday):
            return value
        try:
            return Weekday(int(value))
        except ValueError:
            pass
        try:
            return Weekday[str(value).upper()]
        except KeyError:
            self.fail(f"{value} is not a weekday name or a number from 0 to 6", param, ctx)


class ObjectID(click.ParamType):
    name = "object_id"

    def convert(self, value, param, ctx):
        try:
            value = normalize_object_id(value)
        except ValueError:
            self.fail(f"{value} is not a valid Sui object ID", param, ctx)
        else:
            return value

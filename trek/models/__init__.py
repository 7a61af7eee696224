from trek.models.user import User
from trek.models.ride import Ride
from trek.models.ride_request import RideRequest

__all__ = ["User", "Ride", "RideRequest"]

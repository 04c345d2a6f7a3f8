from datetime import date, datetime, time
from zoneinfo import ZoneInfo

TZ = ZoneInfo("Asia/Kolkata")

MON = date(2025, 6, 16)
TUE = date(2025, 6, 17)
WED = date(2025, 6, 18)
THU = date(2025, 6, 19)
FRI = date(2025, 6, 20)


class FakeNow:
    """Settable time source for ReferenceClock."""

    def __init__(self, moment: datetime) -> None:
        self.moment = moment

    def __call__(self) -> datetime:
        return self.moment

    def set_day(self, day: date, hour: int = 10, minute: int = 0) -> None:
        self.moment = datetime.combine(day, time(hour, minute), tzinfo=TZ)

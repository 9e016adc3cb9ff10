import math
from dataclasses import dataclass
from datetime import datetime


@dataclass
class ActiveCarbs:
    timestamp: datetime  # meal start
    total_carbs: float  # grams
    tau: float = 40.0  # absorption time constant (minutes)

    def absorbed(self, now):
        minutes = (now - self.timestamp).total_seconds() / 60.0
        if minutes <= 0:
            return 0.0
        return min(self.total_carbs * (1 - math.exp(-minutes / self.tau)), self.total_carbs)

    def remaining(self, now):
        return self.total_carbs - self.absorbed(now)


# Exponential absorption model: remaining = total * exp(-t / tau)
def carbs_on_board(meals, now):
    return sum(m.remaining(now) for m in meals)


def clean_up_meals(meals, now, min_remaining=0.1):
    """Drops fully absorbed meals in place."""
    meals[:] = [m for m in meals if m.remaining(now) >= min_remaining]


def add_or_update_meal(meals, carbs, now, tau):
    """
    A meal within 30 min of an existing one is the same meal:
    its total is replaced when the new estimate differs by more than 5 g.
    Returns the meal that now carries the estimate.
    """
    clean_up_meals(meals, now)

    for meal in meals:
        if (now - meal.timestamp).total_seconds() / 60.0 < 30:
            if abs(meal.total_carbs - carbs) > 5.0:
                meal.total_carbs = carbs
            return meal

    meal = ActiveCarbs(timestamp=now, total_carbs=carbs, tau=float(tau))
    meals.append(meal)
    return meal


def estimate_rise_from_cob(meals, now, effective_cr, tau, window_minutes=60):
    """
    Glucose rise (mmol/L) still expected from carbs on board within the window.
    """
    if effective_cr <= 0 or tau <= 0:
        return 0.0
    fraction = min(1.0, window_minutes / float(tau))
    return carbs_on_board(meals, now) * (1.0 / effective_cr) * fraction

"""
Subscription Period Translator.

Maps a product's billing terms to gateway period-billing parameters.

FType "build" makes the gateway charge on enrollment. FType "job" records the
enrollment and schedules the first debit `first_charge_delay_days` later; it
is what keeps trial users from being charged up front.
"""

from datetime import date, timedelta

from storefront.exceptions import ConfigError
from storefront.models.domain import GatewayPeriodParams, PeriodConfig, Trial

F_TYPE_IMMEDIATE = "build"
F_TYPE_DEFERRED = "job"


def translate_period(
    period_config: PeriodConfig,
    trial: Trial | None,
    product_id: str = "",
) -> GatewayPeriodParams:
    """
    Translate billing terms into gateway period parameters.

    Raises:
        ConfigError: If period_times < 1 or the first charge delay is negative
    """
    if period_config.period_times < 1:
        raise ConfigError(product_id, f"period_times must be >= 1, got {period_config.period_times}")

    if trial is None:
        first_charge_delay_days = 0
        f_type = F_TYPE_IMMEDIATE
    else:
        first_charge_delay_days = trial.days
        f_type = F_TYPE_DEFERRED

    if period_config.first_charge_delay_days < 0 or first_charge_delay_days < 0:
        raise ConfigError(
            product_id,
            f"first_charge_delay_days must be >= 0, got {period_config.first_charge_delay_days}",
        )

    return GatewayPeriodParams(
        period_type=period_config.period_type,
        period_date=period_config.period_date,
        period_times=period_config.period_times,
        f_type=f_type,
        first_charge_delay_days=first_charge_delay_days,
    )


def first_charge_date(params: GatewayPeriodParams, enrolled_on: date) -> date | None:
    """First debit date for deferred enrollments, None when charged immediately."""
    if params.f_type != F_TYPE_DEFERRED:
        return None
    return enrolled_on + timedelta(days=params.first_charge_delay_days)

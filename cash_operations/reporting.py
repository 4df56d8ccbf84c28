"""
Forward Cash-Out Report

Scans every cash operation, keeps forward cash-outs of the configured assets
and writes them to a timestamped CSV file together with a settlement flag.
An operation is considered settled once its settlement horizon (one year for
the designated one-year asset, two years for everything else) is strictly in
the past.
"""

from decimal import Decimal
from datetime import datetime, timezone
from dataclasses import dataclass
from pathlib import Path
from typing import Collection, Iterable, List, Optional, Union
import csv
import io
import logging

from .config import CashOperationsConfig
from .models import CashOperationType, OperationEntity
from .repository import CashOperationsRepository


logger = logging.getLogger(__name__)

REPORT_HEADER = ["Id", "Date", "ClientId", "AssetId", "Amount", "Settled"]


@dataclass
class CashoutInfo:
    """One forward cash-out row"""
    id: str
    date: datetime
    client_id: str
    asset_id: str
    amount: Decimal

    @classmethod
    def from_entity(cls, entity: OperationEntity) -> 'CashoutInfo':
        return cls(
            id=entity.id,
            date=entity.date_time,
            client_id=entity.client_id,
            asset_id=entity.asset_id,
            amount=entity.amount,
        )


def add_years(value: datetime, years: int) -> datetime:
    """Shift by whole calendar years; 29 February falls back to the 28th"""
    try:
        return value.replace(year=value.year + years)
    except ValueError:
        return value.replace(year=value.year + years, day=28)


def settlement_horizon(cashout: CashoutInfo, one_year_asset_id: Optional[str]) -> datetime:
    years = 1 if one_year_asset_id is not None and cashout.asset_id == one_year_asset_id else 2
    return add_years(cashout.date, years)


def is_settled(cashout: CashoutInfo, now: datetime, one_year_asset_id: Optional[str]) -> bool:
    """True iff the settlement horizon is strictly before now"""
    return settlement_horizon(cashout, one_year_asset_id) < now


def distinct_by_id(cashouts: Iterable[CashoutInfo]) -> List[CashoutInfo]:
    """Keep the first occurrence of each id, preserving order"""
    seen = set()
    result = []
    for cashout in cashouts:
        if cashout.id not in seen:
            seen.add(cashout.id)
            result.append(cashout)
    return result


async def collect_forward_cashouts(repository: CashOperationsRepository,
                                   asset_ids: Collection[str]) -> List[CashoutInfo]:
    """Scan all operations and keep forward cash-outs of the given assets"""
    asset_ids = set(asset_ids)
    found: List[CashoutInfo] = []

    def on_chunk(operations: List[OperationEntity]) -> None:
        found.extend(
            CashoutInfo.from_entity(item) for item in operations
            if item.asset_id in asset_ids and item.type == CashOperationType.FORWARD_CASH_OUT
        )
        logger.info(f"Found total cashouts: {len(found)}")

    await repository.scan_all_chunked(on_chunk)
    return found


def render_report(cashouts: Iterable[CashoutInfo], now: datetime,
                  one_year_asset_id: Optional[str]) -> str:
    output = io.StringIO()
    writer = csv.writer(output, lineterminator="\n")
    writer.writerow(REPORT_HEADER)
    for cashout in cashouts:
        writer.writerow([
            cashout.id,
            cashout.date.isoformat(),
            cashout.client_id,
            cashout.asset_id,
            format(cashout.amount, 'f'),
            str(is_settled(cashout, now, one_year_asset_id)),
        ])
    return output.getvalue()


def report_filename(now: datetime) -> str:
    return f"forward-cashout-{now:%Y-%m-%d_%H-%M-%S}.csv"


def write_report(cashouts: Iterable[CashoutInfo], output_dir: Union[str, Path],
                 now: datetime, one_year_asset_id: Optional[str]) -> Path:
    path = Path(output_dir) / report_filename(now)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(render_report(cashouts, now, one_year_asset_id), encoding="utf-8")
    return path


async def generate_forward_cashout_report(repository: CashOperationsRepository,
                                          config: CashOperationsConfig,
                                          now: Optional[datetime] = None) -> Path:
    """Collect, deduplicate and write the forward cash-out report"""
    now = now or datetime.now(timezone.utc)
    one_year_asset_id = config.one_year_asset_id
    if one_year_asset_id is None:
        logger.warning(
            f"No asset configured under '{config.one_year_asset_key}'; all cashouts use a 2 year horizon"
        )

    logger.info("Getting data...")
    cashouts = distinct_by_id(
        await collect_forward_cashouts(repository, config.report_asset_ids.values())
    )

    path = write_report(cashouts, config.report_output_dir, now, one_year_asset_id)
    logger.info(f"Found {len(cashouts)} forward cashouts. Saved results to {path}")
    return path

from datetime import datetime, timedelta

from sqlalchemy.exc import IntegrityError

from models import db
from models.rate_limit_bucket import RateLimitBucket

def hit(key: str, max_requests: int, window_seconds: int) -> tuple[bool, int]:
    """
    Count one request against `key`. Returns (allowed, retry_after_seconds).
    Fixed window; the increment is one conditional UPDATE so concurrent
    callers cannot both slip under the ceiling.
    """
    now = datetime.utcnow()
    window_floor = now - timedelta(seconds=window_seconds)

    # Roll an expired window over to a fresh one
    db.session.execute(
        db.update(RateLimitBucket)
        .where(RateLimitBucket.key == key, RateLimitBucket.window_start <= window_floor)
        .values(window_start=now, count=0)
    )

    result = db.session.execute(
        db.update(RateLimitBucket)
        .where(RateLimitBucket.key == key, RateLimitBucket.count < max_requests)
        .values(count=RateLimitBucket.count + 1)
    )
    if result.rowcount:
        db.session.commit()
        return True, 0

    row = RateLimitBucket.query.filter_by(key=key).first()
    if row is None:
        try:
            db.session.add(RateLimitBucket(key=key, window_start=now, count=1))
            db.session.commit()
            return True, 0
        except IntegrityError:
            # another request created the bucket first
            db.session.rollback()
            return hit(key, max_requests, window_seconds)

    db.session.commit()
    window_end = row.window_start + timedelta(seconds=window_seconds)
    retry_after = int((window_end - now).total_seconds())
    return False, max(retry_after, 1)

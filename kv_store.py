"""
Key-value store over the application database.

Every operation touches a single key and commits on its own, so callers get the
atomic single-key semantics of a Redis-style store: set_if_absent is a unique
insert, increment is an in-place UPDATE, sorted sets order by a float score.
Statements go straight to the database rather than through the ORM identity map,
so two requests never read each other's stale cached rows.
"""
import hashlib
import logging
from datetime import timedelta
from functools import wraps

from sqlalchemy import delete, func, insert, or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from errors import UpstreamServiceFailed
from models import Counter, KeyValue, ListItem, SortedSetMember, db, utcnow

log = logging.getLogger(__name__)


def storage_errors(f):
    @wraps(f)
    def decorated_function(*args, **kwargs):
        try:
            return f(*args, **kwargs)
        except SQLAlchemyError as e:
            db.session.rollback()
            log.error(f'Key-value store {f.__name__} failed: {e}')
            raise UpstreamServiceFailed('kv_store', f'Key-value store unavailable: {e.__class__.__name__}')

    return decorated_function


def _member_hash(member):
    return hashlib.sha256(member.encode('utf-8')).hexdigest()


def _expiry(ttl):
    return utcnow() + timedelta(seconds=ttl) if ttl else None


class KeyValueStore:
    @storage_errors
    def get(self, key):
        return db.session.execute(
            select(KeyValue.value).where(
                KeyValue.key == key,
                or_(KeyValue.expires_at.is_(None), KeyValue.expires_at > utcnow()),
            )
        ).scalar_one_or_none()

    def exists(self, key):
        return self.get(key) is not None

    @storage_errors
    def set(self, key, value, ttl=None):
        values = {'value': value, 'expires_at': _expiry(ttl), 'updated_at': utcnow()}
        result = db.session.execute(update(KeyValue).where(KeyValue.key == key).values(**values))
        if result.rowcount == 0:
            try:
                db.session.execute(insert(KeyValue).values(key=key, **values))
            except IntegrityError:
                # Another writer inserted first; last write wins
                db.session.rollback()
                db.session.execute(update(KeyValue).where(KeyValue.key == key).values(**values))
        db.session.commit()

    @storage_errors
    def set_if_absent(self, key, value, ttl=None):
        """Insert key only when no live value exists. Returns True if this call wrote it."""
        db.session.execute(
            delete(KeyValue).where(KeyValue.key == key, KeyValue.expires_at <= utcnow())
        )
        db.session.commit()
        try:
            db.session.execute(
                insert(KeyValue).values(
                    key=key, value=value, expires_at=_expiry(ttl), updated_at=utcnow()
                )
            )
            db.session.commit()
        except IntegrityError:
            db.session.rollback()
            return False
        return True

    @storage_errors
    def delete(self, key):
        db.session.execute(delete(KeyValue).where(KeyValue.key == key))
        db.session.commit()

    @storage_errors
    def increment(self, key, amount=1):
        bump = update(Counter).where(Counter.key == key).values(value=Counter.value + amount)
        if db.session.execute(bump).rowcount == 0:
            try:
                db.session.execute(insert(Counter).values(key=key, value=amount))
            except IntegrityError:
                db.session.rollback()
                db.session.execute(bump)
        db.session.commit()
        return db.session.execute(select(Counter.value).where(Counter.key == key)).scalar_one()

    @storage_errors
    def get_counter(self, key):
        return db.session.execute(select(Counter.value).where(Counter.key == key)).scalar_one_or_none()

    @storage_errors
    def set_counter(self, key, value):
        if db.session.execute(
            update(Counter).where(Counter.key == key).values(value=value)
        ).rowcount == 0:
            db.session.execute(insert(Counter).values(key=key, value=value))
        db.session.commit()

    @storage_errors
    def sorted_set_add(self, key, score, member):
        """Add member or move it to a new score. Returns True when the member is new."""
        digest = _member_hash(member)
        moved = db.session.execute(
            update(SortedSetMember)
            .where(SortedSetMember.set_key == key, SortedSetMember.member_hash == digest)
            .values(score=score)
        ).rowcount
        if moved:
            db.session.commit()
            return False
        try:
            db.session.execute(
                insert(SortedSetMember).values(
                    set_key=key, member_hash=digest, member=member, score=score
                )
            )
            db.session.commit()
        except IntegrityError:
            db.session.rollback()
            return False
        return True

    @storage_errors
    def sorted_set_remove(self, key, member):
        result = db.session.execute(
            delete(SortedSetMember).where(
                SortedSetMember.set_key == key, SortedSetMember.member_hash == _member_hash(member)
            )
        )
        db.session.commit()
        return result.rowcount > 0

    @storage_errors
    def sorted_set_range(self, key, offset=0, limit=None, reverse=True):
        """Members ordered by score, highest first unless reverse is False."""
        if reverse:
            order = (SortedSetMember.score.desc(), SortedSetMember.id.desc())
        else:
            order = (SortedSetMember.score.asc(), SortedSetMember.id.asc())
        query = (
            select(SortedSetMember.member)
            .where(SortedSetMember.set_key == key)
            .order_by(*order)
            .offset(offset)
        )
        if limit is not None:
            query = query.limit(limit)
        return list(db.session.execute(query).scalars())

    @storage_errors
    def sorted_set_count(self, key):
        return db.session.execute(
            select(func.count(SortedSetMember.id)).where(SortedSetMember.set_key == key)
        ).scalar_one()

    @storage_errors
    def list_push(self, key, value, max_length=None):
        db.session.execute(insert(ListItem).values(list_key=key, value=value, created_at=utcnow()))
        db.session.commit()
        if max_length:
            cutoff = db.session.execute(
                select(ListItem.id)
                .where(ListItem.list_key == key)
                .order_by(ListItem.id.desc())
                .offset(max_length - 1)
                .limit(1)
            ).scalar_one_or_none()
            if cutoff is not None:
                db.session.execute(
                    delete(ListItem).where(ListItem.list_key == key, ListItem.id < cutoff)
                )
                db.session.commit()

    @storage_errors
    def list_range(self, key, limit=None):
        """Most recent `limit` items, oldest first."""
        query = select(ListItem.value).where(ListItem.list_key == key).order_by(ListItem.id.desc())
        if limit is not None:
            query = query.limit(limit)
        values = list(db.session.execute(query).scalars())
        values.reverse()
        return values

from flask_sqlalchemy import SQLAlchemy
from datetime import datetime, timezone

db = SQLAlchemy()


def utcnow():
    # Naive UTC, which is what SQLite DateTime columns round-trip
    return datetime.now(timezone.utc).replace(tzinfo=None)


class KeyValue(db.Model):
    __tablename__ = 'kv_entries'

    key = db.Column(db.String(255), primary_key=True)
    value = db.Column(db.Text, nullable=False)
    expires_at = db.Column(db.DateTime, nullable=True)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)


class Counter(db.Model):
    __tablename__ = 'kv_counters'

    key = db.Column(db.String(255), primary_key=True)
    value = db.Column(db.BigInteger, nullable=False, default=0)


class SortedSetMember(db.Model):
    __tablename__ = 'kv_sorted_sets'
    __table_args__ = (db.UniqueConstraint('set_key', 'member_hash', name='uq_sorted_set_member'),)

    id = db.Column(db.Integer, primary_key=True)
    set_key = db.Column(db.String(255), nullable=False, index=True)
    member_hash = db.Column(db.String(64), nullable=False)
    member = db.Column(db.Text, nullable=False)
    score = db.Column(db.Float, nullable=False, index=True)


class ListItem(db.Model):
    __tablename__ = 'kv_list_items'

    id = db.Column(db.Integer, primary_key=True)
    list_key = db.Column(db.String(255), nullable=False, index=True)
    value = db.Column(db.Text, nullable=False)
    created_at = db.Column(db.DateTime, default=utcnow)

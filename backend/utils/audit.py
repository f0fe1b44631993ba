import logging

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from models.log import Log

logger = logging.getLogger(__name__)

def write_log(db: Session, *, action, resource, status="SUCCESS", ip=None, meta=None):
    entry = Log(action=action, resource=resource, status=status, ip=ip, meta=meta or {})
    db.add(entry)
    try:
        db.commit()
    except SQLAlchemyError:
        # The stock change is already committed; losing the action log must not fail the request
        db.rollback()
        logger.exception("Could not write action log %s/%s", resource, action)

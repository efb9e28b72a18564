from typing import Any, List, Optional

from dutycalc.web.db import db


class BaseModel(db.Model):
    __abstract__ = True

    @classmethod
    def create(cls, commit: bool = True, **kwargs):
        instance = cls(**kwargs)
        return instance.save(commit=commit)

    @classmethod
    def find_by(cls, **kwargs) -> Optional[Any]:
        return cls.query.filter_by(**kwargs).first()

    @classmethod
    def where(cls, **kwargs) -> List[Any]:
        return cls.query.filter_by(**kwargs).all()

    def save(self, commit: bool = True):
        db.session.add(self)
        if commit:
            db.session.commit()
        return self

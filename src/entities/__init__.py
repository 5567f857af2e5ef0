from . import model, slack
from .model import BaseModel, json_default
from .slack import User, UserGroup, UserGroupMember

__all__ = ["model", "slack", "BaseModel", "json_default", "User", "UserGroup", "UserGroupMember"]

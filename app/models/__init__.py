from .organization import Organization, Base
from .membership import Membership

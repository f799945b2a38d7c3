from typing import Optional

from pydantic import BaseModel

from .ab_test import VariantModel


class VariantAssignmentResponseModel(BaseModel):
    test_id: str
    user_id: str
    # None when no experiment applies; the caller uses its own default
    variant: Optional[VariantModel] = None

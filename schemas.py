"""Request bodies for the JSON routes."""

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class _Body(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class RegisterBody(_Body):
    email: str = ''
    password: str = ''
    name: str = ''


class LoginBody(_Body):
    email: str = ''
    password: str = ''


class ChatBody(_Body):
    message: str = ''
    image_data: Optional[str] = Field(default=None, alias='imageData')


class CheckoutBody(_Body):
    price_id: str = Field(default='', alias='priceId')
    plan_name: str = Field(default='', alias='planName')


class CancelBody(_Body):
    subscription_id: str = Field(default='', alias='subscriptionId')


class PortalBody(_Body):
    return_url: str = Field(default='', alias='returnUrl')


class AdminTierBody(_Body):
    email: str
    tier: str
    subscription_status: Optional[str] = Field(default=None, alias='subscriptionStatus')

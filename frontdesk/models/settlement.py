from frontdesk.models.base import DomainModel
from frontdesk.models.checkout import RegisteredPayment
from frontdesk.models.distribution import DistributionPlan
from frontdesk.models.folio import Folio


class DistributionApplied(DomainModel):
    plan: DistributionPlan
    folio: Folio
    replayed: bool = False


class PaymentApplied(DomainModel):
    payment: RegisteredPayment
    folio: Folio
    replayed: bool = False

"""Import every mapped class so Base.metadata sees the whole schema"""
from orca.domain.audit.models import AuditLog  # noqa: F401
from orca.domain.auth.models import User  # noqa: F401
from orca.domain.patients.models import Patient  # noqa: F401
from orca.domain.billing.models import (  # noqa: F401
    FamilyGroup, PatientAccount, Invoice, InvoiceItem, PaymentPlan, ScheduledPayment, CreditBalance,
    TreatmentEstimate, EstimateScenario, Statement,
)
from orca.domain.payments.models import (  # noqa: F401
    PaymentMethod, Payment, PaymentAllocation, Refund, PaymentLink,
)
from orca.domain.insurance.models import (  # noqa: F401
    InsuranceCompany, PatientInsurance, InsuranceClaim, ClaimItem, ClaimStatusHistory, EOB, EOBLine,
    InsurancePayment,
)
from orca.domain.collections.models import (  # noqa: F401
    CollectionWorkflow, CollectionStage, AccountCollection, CollectionActivity, PaymentPromise,
    CollectionAgency, AgencyReferral, WriteOff, PaymentReminder,
)
from orca.domain.lab.models import (  # noqa: F401
    LabVendor, LabProduct, LabOrder, LabOrderItem, LabOrderStatusLog,
)

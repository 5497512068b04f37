class BillingError(Exception):
    code = "BillingError"
    status_code = 400

    def __init__(self, message: str | None = None):
        super().__init__(message or self.code)
        self.message = message or self.code

    def to_payload(self) -> dict:
        return {"error": self.code, "detail": self.message}


class InvalidWindow(BillingError):
    code = "InvalidWindow"
    status_code = 400


class TariffNotFound(BillingError):
    code = "TariffNotFound"
    status_code = 404


class OverlappingBondWindow(BillingError):
    code = "OverlappingBondWindow"
    status_code = 409


class DuplicateBondNumber(BillingError):
    code = "DuplicateBondNumber"
    status_code = 409


class PaymentPeriodMismatch(BillingError):
    code = "PaymentPeriodMismatch"
    status_code = 422

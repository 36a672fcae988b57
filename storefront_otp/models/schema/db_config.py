from storefront_otp.models.otp import OtpEntry


class Databases:
    otp = OtpEntry

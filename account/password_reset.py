"""
account/password_reset.py -- OTP-based password reset.

Flow:
  request_otp(email)            -> new unverified transaction (OTP + reset token)
  verify_otp(email, otp)        -> verified; reset token handed to the caller
  reset_password(token, pw)     -> used; password replaced, lockout cleared

Each step is one conditional UPDATE ... RETURNING in account/store.py, so a
transaction moves forward at most once even when requests race: the loser
simply matches no row and gets InvalidOrExpiredOtp, the same answer as for a
wrong or expired code.

OTP delivery is out of band. request_otp() returns the transaction to the
in-process caller and never logs the code above DEBUG.
"""

from __future__ import annotations

import logging

from account.errors import InternalFailure, InvalidOrExpiredOtp, UserNotFound
from account.models import Clock, PasswordResetTransaction, utc_now
from account.security import HasherError, generate_otp, generate_token, hash_password
from account.store import AccountDatabase, ResetTransactionStore, UserStore, translate_errors
from account.validators import validate_new_password
from core.config import AccountConfig

logger = logging.getLogger("accountd.reset")


class PasswordResetEngine:
    def __init__(self, db: AccountDatabase, config: AccountConfig, clock: Clock = utc_now) -> None:
        self.db = db
        self.config = config
        self.clock = clock
        self.users = UserStore(db)
        self.transactions = ResetTransactionStore(db)

    def request_otp(self, email: str) -> PasswordResetTransaction:
        """Open a new reset transaction for the user. Earlier ones stay valid."""
        with translate_errors("request_otp"):
            user = self.users.get_by_email(email)
            if user is None:
                raise UserNotFound(email)

            txn = self.transactions.create(
                PasswordResetTransaction(
                    user_id=user.id,
                    otp=generate_otp(self.config.otp_length),
                    reset_token=generate_token(),
                    expires_at=self.clock() + self.config.otp_validity_duration,
                )
            )

        logger.info("OTP issued for user id=%s (transaction id=%s)", user.id, txn.id)
        logger.debug("OTP for user id=%s is %s", user.id, txn.otp)
        return txn

    def verify_otp(self, email: str, otp: str) -> str:
        """Exchange a correct, unexpired, unverified OTP for its reset token."""
        with translate_errors("verify_otp"):
            user = self.users.get_by_email(email)
            if user is None:
                raise UserNotFound(email)

            reset_token = self.transactions.verify(user.id, otp, self.clock())

        if reset_token is None:
            logger.warning("OTP verification failed for user id=%s", user.id)
            raise InvalidOrExpiredOtp()
        logger.info("OTP verified for user id=%s", user.id)
        return reset_token

    def reset_password(self, reset_token: str, new_password: str) -> None:
        """Consume a verified reset token and replace the owner's password.

        The consume and the password update commit together: if either
        fails, the token stays unused and the password unchanged.
        """
        validate_new_password(new_password)
        try:
            password_hash = hash_password(new_password, rounds=self.config.bcrypt_rounds)
        except HasherError as exc:
            raise InternalFailure(debug_description=str(exc)) from exc

        with translate_errors("reset_password"):
            with self.db.transaction() as conn:
                user_id = self.transactions.consume(reset_token, self.clock(), conn=conn)
                if user_id is None:
                    raise InvalidOrExpiredOtp()
                self.users.update_password(user_id, password_hash, conn=conn)

        logger.info("Password reset for user id=%s; lockout cleared", user_id)

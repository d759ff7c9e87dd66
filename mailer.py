# mailer.py
import logging
import smtplib
from email.message import EmailMessage

logger = logging.getLogger(__name__)


class MailError(Exception):
    pass


class Mailer:
    def __init__(
        self,
        host: str | None,
        port: int = 587,
        user: str | None = None,
        password: str | None = None,
        sender: str = "noreply@localhost",
        timeout: int = 10,
    ):
        self.host = host
        self.port = port
        self.user = user
        self.password = password
        self.sender = sender
        self.timeout = timeout

    def send(self, to: str, subject: str, body: str) -> None:
        if not self.host:
            raise MailError("SMTP_HOST not configured")
        msg = EmailMessage()
        msg["From"] = self.sender
        msg["To"] = to
        msg["Subject"] = subject
        msg.set_content(body)
        try:
            with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as smtp:
                smtp.starttls()
                if self.user and self.password:
                    smtp.login(self.user, self.password)
                smtp.send_message(msg)
        except (smtplib.SMTPException, OSError) as e:
            raise MailError(str(e)) from e
        logger.info("mail '%s' sent to %s", subject, to)

    def send_password_reset(self, user, reset_link: str) -> None:
        self.send(
            user.email,
            "Redefinição de Senha",
            f"Olá, {user.name},\n\n"
            "Recebemos uma solicitação para redefinir a sua senha. "
            f"Para continuar, acesse o link abaixo:\n\n{reset_link}\n\n"
            "Este link é válido por 1 hora. Caso não tenha solicitado a alteração, desconsidere este e-mail.",
        )

    def send_purchase_confirmation(self, user, course) -> None:
        self.send(
            user.email,
            f"Acesso liberado: {course.title}",
            f"Olá, {user.name},\n\nSeu pagamento foi confirmado e o curso \"{course.title}\" já está disponível.",
        )

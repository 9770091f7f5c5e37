from email.utils import (
    parseaddr,
)
from re import (
    compile as compile_regex,
)

EMAIL_ADDRESS = compile_regex(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def parse_email(value: str) -> str:
    _, address = parseaddr(value or "")

    if not EMAIL_ADDRESS.match(address):
        raise ValueError(f"{value!r} is not a valid subscriber email")

    return address


class SesEmailClient:
    def __init__(self, client, sender: str) -> None:
        self.client = client
        self.sender = sender

    def send_email_to(self, recipient: str, subject: str, html_body: str, text_body: str) -> str:
        response = self.client.send_email(
            Destination={
                "ToAddresses": [
                    recipient,
                ],
            },
            Message={
                "Body": {
                    "Html": {
                        "Data": html_body,
                    },
                    "Text": {
                        "Data": text_body,
                    },
                },
                "Subject": {
                    "Data": subject,
                },
            },
            Source=self.sender,
        )

        return response["MessageId"]

from marketplace.models.conversation import Conversation, ConversationClearance
from marketplace.models.message import Message
from marketplace.models.quote import Quote
from marketplace.models.appointment import Appointment
from marketplace.models.payment_session import PaymentSession
from marketplace.models.profile import UserProfile
from marketplace.models.wallet import WalletTransaction

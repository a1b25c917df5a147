"""
Get a Podio Refresh Token via OAuth Authorization Code Flow

The portal normally runs on an app-level token (client credentials). This
script is for deployments that act on behalf of a Podio user instead: it walks
through the browser authorization step and stores the resulting access and
refresh tokens in .env, where the token manager picks them up.
"""
import sys
import secrets
import webbrowser
from urllib.parse import urlencode, urlparse, parse_qs, unquote

import requests
from dotenv import load_dotenv

from shared_podio.auth import TokenManager
from shared_podio.config import get_config
from shared_podio.storage import DotenvStorage

load_dotenv()


class PodioOAuthFlow:
    """Handle Podio OAuth authorization code flow"""

    def __init__(self):
        self.config = get_config()
        if not self.config.is_configured:
            raise ValueError("PODIO_CLIENT_ID and PODIO_CLIENT_SECRET must be set in .env")
        if not self.config.podio_redirect_uri:
            raise ValueError("PODIO_REDIRECT_URI must be set in .env (it must match the API key's domain)")

        self.auth_url = self.config.podio_authorize_url
        self.token_url = self.config.podio_token_url
        self.state = secrets.token_urlsafe(16)
        self.token_manager = TokenManager(storage=DotenvStorage(), config=self.config)

    def get_authorization_url(self) -> str:
        """Generate the OAuth authorization URL"""
        params = {
            'client_id': self.config.podio_client_id,
            'redirect_uri': self.config.podio_redirect_uri,
            'state': self.state,
        }
        return f"{self.auth_url}?{urlencode(params)}"

    def exchange_code_for_tokens(self, auth_code: str) -> dict:
        """Exchange authorization code for access and refresh tokens"""
        data = {
            'grant_type': 'authorization_code',
            'client_id': self.config.podio_client_id,
            'client_secret': self.config.podio_client_secret,
            'redirect_uri': self.config.podio_redirect_uri,
            'code': auth_code,
        }

        try:
            response = requests.post(self.token_url, data=data, timeout=self.config.request_timeout)
            response.raise_for_status()
            return response.json()

        except requests.exceptions.RequestException as e:
            print(f"❌ Error exchanging code for tokens: {e}")
            if getattr(e, 'response', None) is not None:
                print(f"Response: {e.response.text}")
            raise

    def extract_code_from_text(self, text: str) -> str:
        """Extract authorization code from URL or raw string"""
        if not text:
            return ""

        if 'code=' in text:
            query = urlparse(text).query or text
            params = parse_qs(query)
            returned_state = params.get('state', [None])[0]
            if returned_state and returned_state != self.state:
                raise ValueError("OAuth state mismatch, start the flow again")
            if 'code' in params:
                return unquote(params['code'][0])

        return unquote(text)

    def run_oauth_flow(self) -> bool:
        """Run the OAuth flow with manual code entry"""
        print("=" * 80)
        print("Podio OAuth Flow - Get Refresh Token")
        print("=" * 80)
        print()
        print("1. Browser opens to the Podio authorization page")
        print("2. You sign in and grant access")
        print("3. Podio redirects to PODIO_REDIRECT_URI with ?code=...")
        print("4. Paste the code (or the whole redirect URL) here")
        print()

        auth_url = self.get_authorization_url()
        print("If the browser doesn't open, go to this URL:")
        print(auth_url)
        print()
        webbrowser.open(auth_url)

        auth_input = input("Paste the authorization code (or full URL) here: ").strip()
        if not auth_input:
            print("❌ No code provided")
            return False

        auth_code = self.extract_code_from_text(auth_input)
        print(f"\n✓ Code received: {auth_code[:12]}...")

        print("Exchanging authorization code for tokens...")
        try:
            token_data = self.exchange_code_for_tokens(auth_code)
        except requests.exceptions.RequestException as e:
            print(f"❌ Failed to get tokens: {e}")
            print("Codes expire quickly and can only be used once - try again.")
            return False

        if not self.token_manager.save_tokens(token_data):
            print("❌ Token response could not be saved")
            return False

        print(f"✓ Tokens saved to {self.token_manager.storage.env_file}")
        print(f"  Access token expires in: {token_data.get('expires_in', 'unknown')} seconds")
        print("The token manager will refresh the access token automatically.")
        return True


def main():
    """Main entry point"""
    try:
        flow = PodioOAuthFlow()
        success = flow.run_oauth_flow()
        return 0 if success else 1

    except ValueError as e:
        print(f"❌ Configuration Error: {e}")
        print()
        print("Make sure your .env file has:")
        print("  PODIO_CLIENT_ID=your_client_id")
        print("  PODIO_CLIENT_SECRET=your_client_secret")
        print("  PODIO_REDIRECT_URI=https://your-portal.example.com/callback")
        return 1

    except KeyboardInterrupt:
        print("\n\nCancelled by user")
        return 1


if __name__ == "__main__":
    sys.exit(main())
